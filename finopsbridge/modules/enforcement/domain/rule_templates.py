"""
Rego rule text for the built-in policy types.

Policies created from the dashboard store the output of `render_rule` in
`Policy.rego`. Every template defines `allow`, `violation` (both with
defaults, so the decision document always carries them) and a `msg` that is
set only while the rule is violated.
"""

from __future__ import annotations

import json
from typing import Any, Callable, Mapping

from finopsbridge.models.policy import PolicyType
from finopsbridge.shared.adapters.sizing import SIZE_NAME_LEVELS

RULE_PACKAGE = "finopsbridge.policies"


def _header() -> str:
    return f"package {RULE_PACKAGE}\n\nimport rego.v1\n"


def _number(config: Mapping[str, Any], key: str) -> float:
    value = config.get(key)
    if value is None or isinstance(value, bool):
        raise ValueError(f"'{key}' is required")
    try:
        return float(value)
    except (TypeError, ValueError) as e:
        raise ValueError(f"'{key}' must be numeric") from e


def _fmt(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else repr(value)


def _max_spend(config: Mapping[str, Any]) -> str:
    limit = _fmt(_number(config, "maxAmount"))
    account_id = config.get("accountId")
    scope = f"\tinput.account_id == {json.dumps(str(account_id))}\n" if account_id else ""
    return (
        _header()
        + "\ndefault allow := true\n\ndefault violation := false\n"
        + f"\nviolation if {{\n{scope}\tinput.monthly_spend > {limit}\n}}\n"
        + "\nallow := false if violation\n"
        + "\nmsg := sprintf(\"Monthly spend $%v exceeds limit of $%v\", "
        + f"[input.monthly_spend, {limit}]) if violation\n"
    )


def _block_instance_type(config: Mapping[str, Any]) -> str:
    size_name = str(config.get("maxSize") or "").strip().lower()
    if size_name not in SIZE_NAME_LEVELS:
        raise ValueError(
            f"'maxSize' must be one of {', '.join(sorted(SIZE_NAME_LEVELS))}"
        )
    level = SIZE_NAME_LEVELS[size_name]
    return (
        _header()
        + "\ndefault allow := true\n\ndefault violation := false\n"
        + f"\nviolation if {{\n\tinput.instance_size > {level}\n}}\n"
        + "\nallow := false if violation\n"
        + "\nmsg := sprintf(\"Instance size %v exceeds maximum allowed size: "
        + f"{size_name}\", [input.instance_size]) if violation\n"
    )


def _auto_stop_idle(config: Mapping[str, Any]) -> str:
    hours = _fmt(_number(config, "idleHours"))
    return (
        _header()
        + "\ndefault allow := true\n\ndefault violation := false\n"
        + f"\nviolation if {{\n\tinput.idle_hours >= {hours}\n}}\n"
        + "\nallow := false if violation\n"
        + "\nmsg := sprintf(\"Resource has been idle for %v hours, should be stopped\", "
        + "[input.idle_hours]) if violation\n"
    )


def _require_tags(config: Mapping[str, Any]) -> str:
    tags = config.get("requiredTags") or []
    if not isinstance(tags, list) or not all(isinstance(t, str) and t for t in tags):
        raise ValueError("'requiredTags' must be a list of tag names")
    tag_list = ", ".join(json.dumps(t) for t in tags)
    return (
        _header()
        + "\ndefault allow := true\n\ndefault violation := false\n"
        + f"\nrequired_tags := [{tag_list}]\n"
        + "\nmissing_tags contains tag if {\n\tsome tag in required_tags\n"
        + "\tnot input.tags[tag]\n}\n"
        + "\nviolation if count(missing_tags) > 0\n"
        + "\nallow := false if violation\n"
        + "\nmsg := sprintf(\"Missing required tag: %s\", [concat(\", \", sort(missing_tags))]) "
        + "if violation\n"
    )


_RENDERERS: dict[str, Callable[[Mapping[str, Any]], str]] = {
    PolicyType.MAX_SPEND.value: _max_spend,
    PolicyType.BLOCK_INSTANCE_TYPE.value: _block_instance_type,
    PolicyType.AUTO_STOP_IDLE.value: _auto_stop_idle,
    PolicyType.REQUIRE_TAGS.value: _require_tags,
}


def render_rule(policy_type: str, config: Mapping[str, Any]) -> str:
    """Render the Rego module for a built-in policy type."""
    renderer = _RENDERERS.get(str(policy_type))
    if renderer is None:
        raise ValueError(f"unknown policy type: {policy_type}")
    return renderer(config)
