"""Schema validation for clinical case manifests."""

from __future__ import annotations

import json
from collections import Counter
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, MutableMapping, Sequence, Tuple

LANGUAGE_LEVELS: Tuple[str, ...] = ("A2", "B1", "B2", "C1")
CLUE_TYPES: Tuple[str, ...] = ("lab", "imaging", "history", "physical", "vital")
RAPPORT_MIN = 0
RAPPORT_MAX = 100
DEFAULT_STARTING_RAPPORT = 50


def path(*parts: object) -> str:
    path_str = ""
    for part in parts:
        if isinstance(part, int):
            path_str = f"{path_str}[{part}]"
            continue
        if not isinstance(part, str):
            part = str(part)
        if part.isidentifier():
            path_str = f"{path_str}.{part}" if path_str else part
        else:
            path_str = f"{path_str}[{json.dumps(part)}]"
    return path_str


def format_validation_message(path_str: str, context: str, message: str) -> str:
    if context:
        return f"{path_str}: {context}: {message}"
    return f"{path_str}: {message}"


def is_non_empty_str(value: Any) -> bool:
    return isinstance(value, str) and value.strip() != ""


def is_optional_str(value: Any) -> bool:
    return value is None or isinstance(value, str)


def is_list_like(value: Any) -> bool:
    return isinstance(value, Sequence) and not isinstance(value, (str, bytes, Mapping))


def is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


class ValidationContext:
    """Utility container for accumulating validation errors."""

    def __init__(self) -> None:
        self.errors: List[str] = []

    def add(self, context: str, path_str: str, message: str) -> None:
        self.errors.append(format_validation_message(path_str, context, message))

    def ok(self) -> bool:
        return not self.errors


def require(condition: bool, context: str, path_str: str, message: str, ctx: ValidationContext) -> None:
    if not condition:
        ctx.add(context, path_str, message)


def normalize_nodes(
    raw_nodes: Any, ctx: ValidationContext | None = None
) -> Tuple[Dict[str, Dict[str, Any]], List[str]]:
    """Return nodes keyed by id from either the object or the list form.

    Entries that cannot be keyed are skipped and reported; everything else is
    returned untouched so later passes can report field-level problems.
    """
    nodes: Dict[str, Dict[str, Any]] = {}
    errors: List[str] = []
    node_ids: List[str] = []

    def add_error(context: str, path_parts: Sequence[object], message: str) -> None:
        path_str = path(*path_parts)
        errors.append(format_validation_message(path_str, context, message))
        if ctx is not None:
            ctx.add(context, path_str, message)

    if isinstance(raw_nodes, Mapping):
        for node_id, payload in raw_nodes.items():
            if not is_non_empty_str(node_id):
                add_error("Nodes", ("nodes",), "node identifiers must be non-empty strings.")
                continue
            if not isinstance(payload, Mapping):
                add_error("Nodes", ("nodes", node_id), f"node '{node_id}' must be an object.")
                continue
            declared = payload.get("id")
            if declared is not None and declared != node_id:
                add_error(
                    "Nodes",
                    ("nodes", node_id, "id"),
                    f"declares id '{declared}' but is keyed as '{node_id}'.",
                )
            nodes[node_id] = dict(payload)
        node_ids = list(nodes.keys())
    elif is_list_like(raw_nodes):
        for idx, entry in enumerate(raw_nodes, start=1):
            if not isinstance(entry, MutableMapping):
                add_error(f"Node entry {idx}", ("nodes", idx - 1), "must be an object.")
                continue
            node_id = entry.get("id")
            if not is_non_empty_str(node_id):
                add_error(f"Node entry {idx}", ("nodes", idx - 1, "id"), "is missing a valid 'id'.")
                continue
            node_ids.append(node_id)
            nodes[node_id] = dict(entry)
    else:
        add_error(
            "Case data",
            ("nodes",),
            "must be an object mapping IDs to node definitions or a list of node entries.",
        )

    duplicates = [node_id for node_id, count in Counter(node_ids).items() if count > 1]
    if duplicates:
        dup_list = ", ".join(sorted(set(duplicates)))
        add_error("Nodes", ("nodes",), f"duplicate node IDs found: {dup_list}.")

    return nodes, errors


@dataclass(frozen=True)
class AssetSpec:
    required_fields: Tuple[str, ...]
    optional_fields: Tuple[str, ...]
    field_rules: Mapping[str, str]

    @property
    def allowed_fields(self) -> Tuple[str, ...]:
        return ("kind",) + self.required_fields + self.optional_fields


ASSET_SPECS: Dict[str, AssetSpec] = {
    "placeholder": AssetSpec(
        required_fields=(),
        optional_fields=("label", "description"),
        field_rules={"label": "caption text", "description": "caption text"},
    ),
    "remote": AssetSpec(
        required_fields=("src",),
        optional_fields=("thumbnail",),
        field_rules={"src": "media URL", "thumbnail": "image URL"},
    ),
    "static": AssetSpec(
        required_fields=("src",),
        optional_fields=("thumbnail",),
        field_rules={"src": "bundled media path", "thumbnail": "image path"},
    ),
}


def validate_asset_fields(asset: Mapping[str, Any], kind: str, spec: AssetSpec) -> List[str]:
    """Check one asset against its `AssetSpec`; returns messages relative to the asset path."""
    errors: List[str] = []
    for key in spec.required_fields:
        if not is_non_empty_str(asset.get(key)):
            errors.append(f"'{kind}' asset requires a non-empty '{key}' ({spec.field_rules[key]}).")
    for key in spec.optional_fields:
        if not is_optional_str(asset.get(key)):
            errors.append(f"'{kind}' asset '{key}' must be a string ({spec.field_rules[key]}) if present.")
    unknown = sorted(str(key) for key in asset if key not in spec.allowed_fields)
    if unknown:
        errors.append(f"'{kind}' asset has unknown field(s): {', '.join(unknown)}.")
    return errors


def validate_asset(asset: Any, node_id: str, ctx: ValidationContext) -> None:
    context = f"Node '{node_id}' asset"
    asset_path = path("nodes", node_id, "asset")
    if asset is None:
        # A missing asset renders as an empty placeholder.
        return
    if not isinstance(asset, Mapping):
        ctx.add(context, asset_path, "asset must be an object.")
        return
    kind = asset.get("kind")
    spec = ASSET_SPECS.get(kind) if isinstance(kind, str) else None
    if spec is None:
        ctx.add(context, path("nodes", node_id, "asset", "kind"), f"unsupported asset kind '{kind}'.")
        return
    for message in validate_asset_fields(asset, kind, spec):
        ctx.add(context, asset_path, message)


def validate_choice(
    choice: Any,
    node_id: str,
    index: int,
    nodes: Mapping[str, Any],
    path_parts: Sequence[object],
    ctx: ValidationContext,
) -> None:
    context = f"Choice {index} in node '{node_id}'"
    if not isinstance(choice, Mapping):
        ctx.add(context, path(*path_parts), "must be an object.")
        return

    if not is_non_empty_str(choice.get("id")):
        ctx.add(context, path(*path_parts, "id"), "requires a non-empty 'id'.")
    if not is_non_empty_str(choice.get("label")):
        ctx.add(context, path(*path_parts, "label"), "requires a non-empty 'label'.")

    target = choice.get("next")
    if target is None:
        ctx.add(context, path(*path_parts, "next"), "is missing a 'next' node.")
    elif not is_non_empty_str(target):
        ctx.add(context, path(*path_parts, "next"), "must use a non-empty string 'next'.")
    elif target not in nodes:
        ctx.add(context, path(*path_parts, "next"), f"targets unknown node '{target}'.")

    for key in ("description", "rationale"):
        if not is_optional_str(choice.get(key)):
            ctx.add(context, path(*path_parts, key), f"'{key}' must be a string if present.")
    validate_effects(choice, context, path_parts, ctx)


def validate_auto_advance(
    auto_advance: Any, node_id: str, nodes: Mapping[str, Any], ctx: ValidationContext
) -> None:
    context = f"Node '{node_id}' autoAdvance"
    base = ("nodes", node_id, "autoAdvance")
    if not isinstance(auto_advance, Mapping):
        ctx.add(context, path(*base), "autoAdvance must be an object if present.")
        return
    target = auto_advance.get("next")
    if not is_non_empty_str(target):
        ctx.add(context, path(*base, "next"), "requires a non-empty 'next'.")
    elif target not in nodes:
        ctx.add(context, path(*base, "next"), f"targets unknown node '{target}'.")
    after_ms = auto_advance.get("afterMs")
    if isinstance(after_ms, bool) or not isinstance(after_ms, int) or after_ms < 0:
        ctx.add(context, path(*base, "afterMs"), "'afterMs' must be a non-negative integer.")


def validate_effects(owner: Mapping[str, Any], context: str, path_parts: Sequence[object], ctx: ValidationContext) -> None:
    cp_cost = owner.get("cpCost")
    if cp_cost is not None and not (is_int(cp_cost) and cp_cost >= 0):
        ctx.add(context, path(*path_parts, "cpCost"), "'cpCost' must be a non-negative integer if present.")
    rapport = owner.get("rapportEffect")
    if rapport is not None and not is_int(rapport):
        ctx.add(context, path(*path_parts, "rapportEffect"), "'rapportEffect' must be an integer if present.")


def validate_clues(clues: Any, node_id: str, ctx: ValidationContext) -> None:
    context = f"Node '{node_id}' clues"
    base = ("nodes", node_id, "clues")
    if not is_list_like(clues):
        ctx.add(context, path(*base), "clues must be provided as a list.")
        return
    seen: List[str] = []
    for index, clue in enumerate(clues):
        if not isinstance(clue, Mapping):
            ctx.add(context, path(*base, index), "must be an object.")
            continue
        for key in ("id", "label"):
            if not is_non_empty_str(clue.get(key)):
                ctx.add(context, path(*base, index, key), f"requires a non-empty '{key}'.")
        if not is_optional_str(clue.get("value")):
            ctx.add(context, path(*base, index, "value"), "'value' must be a string if present.")
        clue_type = clue.get("type", "history")
        if clue_type not in CLUE_TYPES:
            ctx.add(
                context,
                path(*base, index, "type"),
                f"'type' must be one of {', '.join(CLUE_TYPES)}; got {clue_type!r}.",
            )
        if not isinstance(clue.get("isKeyFinding", False), bool):
            ctx.add(context, path(*base, index, "isKeyFinding"), "'isKeyFinding' must be a boolean if present.")
        if is_non_empty_str(clue.get("id")):
            seen.append(clue["id"])
    duplicates = sorted(clue_id for clue_id, count in Counter(seen).items() if count > 1)
    if duplicates:
        ctx.add(context, path(*base), f"duplicate clue IDs: {', '.join(duplicates)}.")


def validate_timed_choice(timed: Any, node_id: str, choice_ids: Sequence[str], ctx: ValidationContext) -> None:
    context = f"Node '{node_id}' timedChoice"
    base = ("nodes", node_id, "timedChoice")
    if not isinstance(timed, Mapping):
        ctx.add(context, path(*base), "timedChoice must be an object if present.")
        return
    limit = timed.get("timeLimitMs")
    if not (is_int(limit) and limit > 0):
        ctx.add(context, path(*base, "timeLimitMs"), "'timeLimitMs' must be a positive integer.")
    default = timed.get("defaultChoiceId")
    if not is_non_empty_str(default):
        ctx.add(context, path(*base, "defaultChoiceId"), "requires a non-empty 'defaultChoiceId'.")
    elif default not in choice_ids:
        ctx.add(
            context,
            path(*base, "defaultChoiceId"),
            f"'{default}' is not one of the node's choices.",
        )


def validate_node(node_id: str, node: Mapping[str, Any], nodes: Mapping[str, Any], ctx: ValidationContext) -> None:
    for key in ("title", "description", "prompt"):
        if not is_optional_str(node.get(key)):
            ctx.add(
                f"Node '{node_id}'",
                path("nodes", node_id, key),
                f"'{key}' must be a string if present.",
            )

    validate_asset(node.get("asset"), node_id, ctx)
    validate_effects(node, f"Node '{node_id}'", ("nodes", node_id), ctx)
    if node.get("clues") is not None:
        validate_clues(node.get("clues"), node_id, ctx)

    auto_advance = node.get("autoAdvance")
    if auto_advance is not None:
        validate_auto_advance(auto_advance, node_id, nodes, ctx)

    seen_ids: List[str] = []
    choices = node.get("choices")
    if choices is not None and not is_list_like(choices):
        ctx.add(
            f"Node '{node_id}'",
            path("nodes", node_id, "choices"),
            "choices must be provided as a list.",
        )
    elif choices is not None:
        for index, choice in enumerate(choices, start=1):
            validate_choice(choice, node_id, index, nodes, ("nodes", node_id, "choices", index - 1), ctx)
            if isinstance(choice, Mapping) and is_non_empty_str(choice.get("id")):
                seen_ids.append(choice["id"])
        duplicates = sorted(choice_id for choice_id, count in Counter(seen_ids).items() if count > 1)
        if duplicates:
            ctx.add(
                f"Node '{node_id}'",
                path("nodes", node_id, "choices"),
                f"duplicate choice IDs: {', '.join(duplicates)}.",
            )

    timed = node.get("timedChoice")
    if timed is None:
        return
    if auto_advance is not None:
        ctx.add(
            f"Node '{node_id}'",
            path("nodes", node_id, "timedChoice"),
            "a node cannot combine 'timedChoice' with 'autoAdvance'.",
        )
    validate_timed_choice(timed, node_id, seen_ids, ctx)


def validate_manifest(data: Any) -> List[str]:
    ctx = ValidationContext()
    if not isinstance(data, Mapping):
        ctx.add("Case data", "$", "manifest must be a JSON object.")
        return ctx.errors

    for key in ("id", "title"):
        require(
            is_non_empty_str(data.get(key)),
            "Case data",
            path(key),
            f"must include a non-empty '{key}'.",
            ctx,
        )
    for key in ("chiefComplaint", "summary"):
        require(
            is_optional_str(data.get(key)),
            "Case data",
            path(key),
            f"'{key}' must be a string if present.",
            ctx,
        )

    level = data.get("languageLevel")
    require(
        level in LANGUAGE_LEVELS,
        "Case data",
        path("languageLevel"),
        f"'languageLevel' must be one of {', '.join(LANGUAGE_LEVELS)}; got {level!r}.",
        ctx,
    )

    skills = data.get("skills")
    if skills is not None and not (is_list_like(skills) and all(isinstance(s, str) for s in skills)):
        ctx.add("Case data", path("skills"), "'skills' must be a list of strings if present.")

    duration = data.get("estimatedDurationMinutes")
    if duration is not None and (isinstance(duration, bool) or not isinstance(duration, int) or duration < 0):
        ctx.add(
            "Case data",
            path("estimatedDurationMinutes"),
            "'estimatedDurationMinutes' must be a non-negative integer if present.",
        )

    starting_cp = data.get("startingCp")
    if starting_cp is not None and not (is_int(starting_cp) and starting_cp >= 0):
        ctx.add("Case data", path("startingCp"), "'startingCp' must be a non-negative integer if present.")
    starting_rapport = data.get("startingRapport")
    if starting_rapport is not None and not (
        is_int(starting_rapport) and RAPPORT_MIN <= starting_rapport <= RAPPORT_MAX
    ):
        ctx.add(
            "Case data",
            path("startingRapport"),
            f"'startingRapport' must be an integer between {RAPPORT_MIN} and {RAPPORT_MAX} if present.",
        )

    require(
        "nodes" in data,
        "Case data",
        path("nodes"),
        "must include a 'nodes' section.",
        ctx,
    )
    nodes, _node_errors = normalize_nodes(data.get("nodes"), ctx)

    start = data.get("startNodeId")
    if not is_non_empty_str(start):
        ctx.add("Case data", path("startNodeId"), "requires a non-empty 'startNodeId'.")
    elif start not in nodes:
        ctx.add("Case data", path("startNodeId"), f"references unknown node '{start}'.")

    for node_id, node in nodes.items():
        validate_node(node_id, node, nodes, ctx)

    return ctx.errors
