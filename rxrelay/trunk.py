"""
Trunk file access.

rx reads its trunked system definition from a tab-separated file with a
quoted header row. Only the system name and control channel list of the
first system are exposed; other columns are preserved on write.
"""

from __future__ import annotations

import csv
import logging
import os
import stat
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import List, Union

logger = logging.getLogger(__name__)

SYSNAME_COLUMN = "Sysname"
CONTROL_CHANNEL_COLUMN = "Control Channel List"

DEFAULT_HEADER = [
    SYSNAME_COLUMN,
    CONTROL_CHANNEL_COLUMN,
    "Offset",
    "NAC",
    "Modulation",
    "TGID Tags File",
    "Whitelist",
    "Blacklist",
    "Center Frequency",
]

DEFAULT_ROW = {
    "Offset": "0",
    "NAC": "0",
    "Modulation": "cqpsk",
}


@dataclass
class TrunkSystem:
    sysname: str
    control_channel: str

    def to_dict(self) -> dict:
        return {"sysname": self.sysname, "control_channel": self.control_channel}


def _read_rows(path: Path) -> List[List[str]]:
    with open(path, newline="", encoding="utf-8") as f:
        return [row for row in csv.reader(f, delimiter="\t") if row]


def read_trunk_system(path: Union[str, Path]) -> TrunkSystem:
    """
    Read the first system from a trunk file.

    Raises:
        OSError: If the file cannot be read
        ValueError: If the header or first data row is missing
    """
    rows = _read_rows(Path(path))
    if not rows:
        raise ValueError(f"trunk file {path} is empty")

    header = rows[0]
    for column in (SYSNAME_COLUMN, CONTROL_CHANNEL_COLUMN):
        if column not in header:
            raise ValueError(f"trunk file {path} has no {column!r} column")
    if len(rows) < 2:
        raise ValueError(f"trunk file {path} has no system rows")

    row = rows[1] + [""] * (len(header) - len(rows[1]))
    return TrunkSystem(
        sysname=row[header.index(SYSNAME_COLUMN)],
        control_channel=row[header.index(CONTROL_CHANNEL_COLUMN)],
    )


def write_trunk_system(path: Union[str, Path], system: TrunkSystem) -> None:
    """
    Replace the first system's name and control channel.

    An existing file keeps its other columns and rows. A missing file is
    created with the default header. The write is atomic.

    Raises:
        ValueError: If sysname or control_channel is empty or contains a tab or newline
        OSError: If the file cannot be written
    """
    for name, value in (("sysname", system.sysname), ("control_channel", system.control_channel)):
        if not value or not value.strip():
            raise ValueError(f"{name} must not be empty")
        if any(c in value for c in "\t\r\n"):
            raise ValueError(f"{name} must not contain tabs or newlines")

    path = Path(path)
    mode = None
    if path.exists():
        rows = _read_rows(path)
        mode = stat.S_IMODE(path.stat().st_mode)
    else:
        rows = []
    if not rows:
        rows = [list(DEFAULT_HEADER)]

    header = rows[0]
    for column in (SYSNAME_COLUMN, CONTROL_CHANNEL_COLUMN):
        if column not in header:
            header.append(column)
    if len(rows) < 2:
        rows.append([DEFAULT_ROW.get(column, "") for column in header])

    first = rows[1] + [""] * (len(header) - len(rows[1]))
    first[header.index(SYSNAME_COLUMN)] = system.sysname
    first[header.index(CONTROL_CHANNEL_COLUMN)] = system.control_channel
    rows[1] = first

    fd, tmp_name = tempfile.mkstemp(prefix=".trunk-", suffix=".tsv", dir=str(path.parent) or ".")
    try:
        with os.fdopen(fd, "w", newline="", encoding="utf-8") as f:
            writer = csv.writer(f, delimiter="\t", quoting=csv.QUOTE_ALL, lineterminator="\n")
            writer.writerows(rows)
        if mode is not None:
            # mkstemp creates 0600; keep the existing file's permissions
            os.chmod(tmp_name, mode)
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except OSError:
            pass
        raise
    logger.info(f"Trunk file {path} updated: sysname={system.sysname!r}")
