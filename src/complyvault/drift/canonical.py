"""
Canonical form of a branch-protection ruleset.

The platform returns rulesets with volatile fields (ids, timestamps, links,
current_user_can_bypass) and with list orderings that carry no meaning. Two
rulesets that enforce the same policy must hash the same, so the hash is
taken over a reduced, normalized document.

Canonicalization v1:
    - Keep only: name, target, enforcement, conditions, rules, bypass_actors
    - conditions.ref_name.include / exclude are sorted
    - rules are sorted by (type, canonical JSON of parameters)
    - bypass_actors are reduced to actor_type, actor_id, bypass_mode and sorted
    - Encoding: compact JSON, sorted keys, UTF-8
    - Hash: "sha256:" + hex digest

Any change to these rules must bump CANONICALIZATION_VERSION; baselines
stored under another version are reported as drift.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any

CANONICALIZATION_VERSION = 1

POLICY_FIELDS = ("name", "target", "enforcement", "conditions", "rules", "bypass_actors")
BYPASS_ACTOR_FIELDS = ("actor_type", "actor_id", "bypass_mode")


def _compact(data: Any) -> str:
    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _canonical_conditions(conditions: Any) -> Any:
    if not isinstance(conditions, dict):
        return conditions
    result = dict(conditions)
    ref_name = result.get("ref_name")
    if isinstance(ref_name, dict):
        ref_name = dict(ref_name)
        for key in ("include", "exclude"):
            if isinstance(ref_name.get(key), list):
                ref_name[key] = sorted(ref_name[key], key=str)
        result["ref_name"] = ref_name
    return result


def _canonical_rules(rules: Any) -> Any:
    if not isinstance(rules, list):
        return rules
    normalized = []
    for rule in rules:
        if isinstance(rule, dict):
            entry = {"type": rule.get("type")}
            if rule.get("parameters") is not None:
                entry["parameters"] = rule["parameters"]
            normalized.append(entry)
        else:
            normalized.append(rule)
    return sorted(
        normalized,
        key=lambda r: (
            str(r.get("type")) if isinstance(r, dict) else "",
            _compact(r.get("parameters") if isinstance(r, dict) else r),
        ),
    )


def _canonical_bypass_actors(actors: Any) -> Any:
    if not isinstance(actors, list):
        return actors
    reduced = [
        {k: actor.get(k) for k in BYPASS_ACTOR_FIELDS} if isinstance(actor, dict) else actor
        for actor in actors
    ]
    return sorted(reduced, key=_compact)


def canonicalize_ruleset(ruleset: dict[str, Any]) -> dict[str, Any]:
    """
    Reduce a ruleset to its canonical v1 document.

    Args:
        ruleset: Ruleset detail as returned by the platform API.

    Returns:
        New dict; the input is not modified.
    """
    canonical: dict[str, Any] = {}
    for key in POLICY_FIELDS:
        if key not in ruleset:
            continue
        value = ruleset[key]
        if key == "conditions":
            value = _canonical_conditions(value)
        elif key == "rules":
            value = _canonical_rules(value)
        elif key == "bypass_actors":
            value = _canonical_bypass_actors(value)
        canonical[key] = value
    return canonical


def canonical_bytes(ruleset: dict[str, Any]) -> bytes:
    return _compact(canonicalize_ruleset(ruleset)).encode("utf-8")


def policy_hash(ruleset: dict[str, Any]) -> str:
    """SHA-256 of the canonical encoding, prefixed with "sha256:"."""
    return "sha256:" + hashlib.sha256(canonical_bytes(ruleset)).hexdigest()
