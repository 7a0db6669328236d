"""
Approximate size levels for compute instance types.

All providers share one 1-9 scale so a block_instance_type policy's
`maxSize` (see SIZE_NAME_LEVELS) means the same thing on
every cloud. Unknown shapes rank as the largest level.
"""

from __future__ import annotations

import re
from typing import Any, Mapping

LARGEST_LEVEL = 9

# Config scale for block_instance_type policies (`maxSize`).
SIZE_NAME_LEVELS: dict[str, int] = {
    "small": 2,
    "medium": 3,
    "large": 4,
    "xlarge": 5,
}


def aws_size_level(instance_type: str) -> int:
    size = instance_type.lower().split(".")[-1]
    if size in {"nano", "micro"}:
        return 1
    if size == "small":
        return 2
    if size == "medium":
        return 3
    if size == "large":
        return 4
    if size == "xlarge":
        return 5
    if size == "2xlarge":
        return 6
    if size == "4xlarge":
        return 7
    if size == "8xlarge":
        return 8
    return LARGEST_LEVEL


_AZURE_LEVELS: tuple[tuple[tuple[str, ...], int], ...] = (
    (("_b1", "_a0"), 1),
    (("_b2", "_a1"), 2),
    (("_d2", "_b4"), 3),
    (("_d4", "_b8"), 4),
    (("_d8",), 5),
    (("_d16",), 6),
    (("_d32",), 7),
    (("_d64",), 8),
)


def azure_size_level(vm_size: str) -> int:
    lower = vm_size.lower()
    for prefixes, level in _AZURE_LEVELS:
        # Match the family+vCPU token exactly so "_d2" does not catch "_d24".
        if any(re.search(re.escape(p) + r"(?![0-9])", lower) for p in prefixes):
            return level
    return LARGEST_LEVEL


def gcp_size_level(machine_type: str) -> int:
    lower = machine_type.lower().rsplit("/", 1)[-1]
    if "micro" in lower or "small" in lower:
        return 1
    if "medium" in lower:
        return 2
    if "highcpu" in lower or "highmem" in lower:
        return 8
    match = re.search(r"standard-(\d+)$", lower)
    if match:
        return {1: 3, 2: 4, 4: 5, 8: 6, 16: 7, 32: 8}.get(int(match.group(1)), LARGEST_LEVEL)
    return LARGEST_LEVEL


def max_size_level_from_config(config: Mapping[str, Any]) -> int | None:
    """Resolve the configured ceiling: numeric `maxSizeLevel` wins over `maxSize`."""
    raw_level = config.get("maxSizeLevel")
    if raw_level is not None and not isinstance(raw_level, bool):
        try:
            return int(raw_level)
        except (TypeError, ValueError):
            return None
    size_name = str(config.get("maxSize") or "").strip().lower()
    return SIZE_NAME_LEVELS.get(size_name)
