"""Readers for cgroup memory counters and NUMA node meminfo files."""

import re
from dataclasses import dataclass
from pathlib import Path

from .constants import NUMA_ROOT

_UINT64_MAX = 2**64 - 1
_DIGITS = re.compile(r"[0-9]+")

_NUMA_KEYS = {
    "MemTotal:": "total",
    "MemFree:": "free",
    "MemUsed:": "used",
}


@dataclass(frozen=True)
class NumaMemInfo:
    """Memory figures of one NUMA node, in bytes."""

    total: int = 0
    free: int = 0
    used: int = 0


def _parse_uint(text):
    if not _DIGITS.fullmatch(text):
        raise ValueError(f"invalid unsigned integer: {text!r}")
    value = int(text)
    if value > _UINT64_MAX:
        raise ValueError(f"value out of range: {text!r}")
    return value


def read_cgroup_memory(path):
    """Return the byte count stored in a cgroup memory file such as memory.current."""
    return _parse_uint(Path(path).read_text().strip())


def parse_numa_meminfo(text):
    """Parse the content of a NUMA node meminfo file (values given in kB)."""
    values = {"total": 0, "free": 0, "used": 0}
    for line in text.splitlines():
        fields = line.split()
        if len(fields) < 4:
            continue
        try:
            kilobytes = _parse_uint(fields[3])
        except ValueError:
            continue
        field = _NUMA_KEYS.get(fields[2])
        if field is not None:
            values[field] = kilobytes * 1024

    if values["used"] == 0 and values["total"] > 0:
        values["used"] = values["total"] - values["free"]
    return NumaMemInfo(**values)


def read_numa_meminfo(node_id, root=NUMA_ROOT):
    """Read and parse the meminfo file of the given NUMA node."""
    path = Path(root) / f"node{node_id}" / "meminfo"
    return parse_numa_meminfo(path.read_text())