"""
Offline repair for worlds whose End dimension was generated by BetterEnd/BCLib.

Key points:
- Looks for level.dat files whose End generator is "bclib:betterx" (or missing entirely).
- Swaps in the vanilla End noise generator and leaves every other tag untouched.
- Archives and deletes DIM1 so the End regenerates, and leaves a marker file behind so
  the server-side hook (betterend_fix_hooks) can reset the End island on the next load.

Worlds are found in three places:
  <game dir>/<level-name from server.properties>
  <game dir> itself (a "flat" level.dat)
  <game dir>/saves/*

Typical usage:
  python betterend_fix.py "C:\\path\\to\\.minecraft"
  python betterend_fix.py "C:\\path\\to\\server" --dry-run
"""

from __future__ import annotations

import argparse
import configparser
import gzip
import io
import os
import re
import shutil
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, List, Optional, Sequence

import nbtlib


LEVEL_DAT = "level.dat"
SERVER_PROPERTIES = "server.properties"
SAVES_DIR = "saves"
DEFAULT_LEVEL_NAME = "world"

END_DIMENSION = "minecraft:the_end"
END_DATA_DIR = "DIM1"
BAD_GENERATOR_TYPE = "bclib:betterx"

BACKUP_SUFFIX = ".betterendfixbackup"
TMP_SUFFIX = ".betterendfixtmp"
DIM_ARCHIVE_NAME = END_DATA_DIR + "_betterendfixbackup.zip"
MARKER = "betterendfix.reset_end_island"

RESET_COMMAND = "end_island reset"


class FixError(Exception):
    """Raised when a level.dat no longer has the structure a fix needs."""


class CommandSyntaxError(Exception):
    """Raised by a host's command dispatcher for a command it cannot parse or run."""


@dataclass(frozen=True)
class SaveCandidate:
    world_dir: Path
    level_dat: Path


class _StrictReader(io.BytesIO):
    """BytesIO that raises EOFError on a short read, so a truncated tree never parses."""

    def read(self, size=-1):
        data = super().read(size)
        if size is not None and size >= 0 and len(data) < size:
            raise EOFError(f"expected {size} bytes, got {len(data)}")
        return data


def read_level(path: Path) -> nbtlib.File:
    # level.dat is always gzipped, so a missing gzip header is a read error too.
    raw_nbt = gzip.decompress(Path(path).read_bytes())
    return nbtlib.File.parse(_StrictReader(raw_nbt), byteorder="big")


def serialize_level(root: nbtlib.File) -> bytes:
    buf = io.BytesIO()
    root.write(buf, byteorder="big")
    return gzip.compress(buf.getvalue())


def _get_world_gen_settings(root) -> Optional[nbtlib.Compound]:
    data = root.get("Data") if isinstance(root, dict) else None
    if not isinstance(data, nbtlib.Compound):
        return None
    world_gen = data.get("WorldGenSettings")
    if not isinstance(world_gen, nbtlib.Compound):
        return None
    return world_gen


def _vanilla_end_generator() -> nbtlib.Compound:
    return nbtlib.Compound(
        {
            "type": nbtlib.String("minecraft:noise"),
            "biome_source": nbtlib.Compound({"type": nbtlib.String(END_DIMENSION)}),
            "settings": nbtlib.String("minecraft:end"),
        }
    )


# ---------------------------------------------------------------------------
# Detection
# ---------------------------------------------------------------------------


def level_needs_fix(level_dat: Path, log=print) -> bool:
    """
    Decide whether a level.dat has a broken End generator.

    Returns True when the End dimension or its generator is missing, or when the
    generator type is the BCLib one. Unreadable files and files without
    Data.WorldGenSettings are logged and reported as not fixable.
    """
    try:
        root = read_level(level_dat)
    except Exception as e:
        log(f"WARNING: Could not read {level_dat}: {type(e).__name__}: {e}")
        return False

    world_gen = _get_world_gen_settings(root)
    if world_gen is None:
        log(f"ERROR: No WorldGenSettings found in {level_dat}")
        return False

    dims = world_gen.get("dimensions")
    if not isinstance(dims, nbtlib.Compound) or END_DIMENSION not in dims:
        return True

    end_dim = dims[END_DIMENSION]
    if not isinstance(end_dim, nbtlib.Compound) or "generator" not in end_dim:
        return True

    generator = end_dim["generator"]
    if not isinstance(generator, nbtlib.Compound):
        return False
    return generator.get("type") == BAD_GENERATOR_TYPE


# ---------------------------------------------------------------------------
# Scanning
# ---------------------------------------------------------------------------


def read_level_name(properties_path: Path, log=print) -> Optional[str]:
    """
    Read level-name from a server.properties file.

    Returns None if the file can't be read (the caller then skips that source).
    """
    # server.properties has no section header, and values may contain ':' and '%'.
    cfg = configparser.ConfigParser(delimiters=("=",), interpolation=None, strict=False)
    cfg.optionxform = str
    try:
        text = properties_path.read_text(encoding="utf-8", errors="ignore")
        cfg.read_string("[server]\n" + text)
    except (OSError, configparser.Error) as e:
        log(f"WARNING: Could not read {properties_path}: {type(e).__name__}: {e}")
        return None
    name = _unescape_property(cfg["server"].get("level-name", "").strip())
    return name or DEFAULT_LEVEL_NAME


_PROPERTY_ESCAPE = re.compile(r"\\(u[0-9a-fA-F]{4}|.)")
_PROPERTY_SPECIAL = {"t": "\t", "n": "\n", "r": "\r", "f": "\f"}


def _unescape_property(value: str) -> str:
    # java.util.Properties.store writes "my\:world" and "\u00e9"; load() undoes that.
    def _sub(m: "re.Match[str]") -> str:
        esc = m.group(1)
        if len(esc) == 5 and esc[0] == "u":
            return chr(int(esc[1:], 16))
        return _PROPERTY_SPECIAL.get(esc, esc)

    return _PROPERTY_ESCAPE.sub(_sub, value)


def iter_world_dirs(game_dir: Path, log=print) -> Iterator[Path]:
    seen = set()

    def _once(path: Path) -> bool:
        key = path.resolve()
        if key in seen:
            return False
        seen.add(key)
        return True

    props = game_dir / SERVER_PROPERTIES
    if props.is_file():
        level_name = read_level_name(props, log)
        if level_name is not None:
            lvl = game_dir / level_name
            if _once(lvl):
                yield lvl

    if _once(game_dir):
        yield game_dir

    saves = game_dir / SAVES_DIR
    if saves.is_dir():
        try:
            subdirs = sorted(p for p in saves.iterdir() if p.is_dir())
        except OSError as e:
            log(f"ERROR: Error scanning saves folder {saves}: {type(e).__name__}: {e}")
            subdirs = []
        for d in subdirs:
            if _once(d):
                yield d


def scan_for_fixes(game_dir: Path, log=print) -> List[SaveCandidate]:
    candidates: List[SaveCandidate] = []
    for world_dir in iter_world_dirs(game_dir, log):
        level_dat = world_dir / LEVEL_DAT
        if level_dat.is_file() and level_needs_fix(level_dat, log):
            candidates.append(SaveCandidate(world_dir=world_dir, level_dat=level_dat))
    return candidates


# ---------------------------------------------------------------------------
# Fixing
# ---------------------------------------------------------------------------


def archive_directory(src: Path, dst: Path) -> None:
    """
    Zip `src` into `dst`, one entry per file and one "name/" entry per subdirectory.

    Entry names are relative to `src`; `src` itself gets no entry.
    """
    with zipfile.ZipFile(dst, "w", compression=zipfile.ZIP_DEFLATED, strict_timestamps=False) as zf:
        for dirpath, dirnames, filenames in os.walk(src):
            dirnames.sort()
            here = Path(dirpath)
            if here != src:
                zf.writestr(here.relative_to(src).as_posix() + "/", b"")
            for name in sorted(filenames):
                f = here / name
                zf.write(f, f.relative_to(src).as_posix())


def delete_directory(path: Path) -> None:
    shutil.rmtree(path)


def _atomic_write_bytes(path: Path, data: bytes) -> None:
    tmp = path.with_name(path.name + TMP_SUFFIX)
    with open(tmp, "wb") as fh:
        fh.write(data)
        fh.flush()
        os.fsync(fh.fileno())
    tmp.replace(path)


def apply_fix(candidate: SaveCandidate, log=print) -> None:
    """
    Rewrite one world's End generator to vanilla.

    Order matters: backup, mutate in memory, archive+delete DIM1, write the marker,
    and only then swap the new level.dat in. Every step before the swap is safe to
    repeat, so a failed run can simply be retried.

    Raises OSError on I/O failure and FixError if WorldGenSettings is gone.
    """
    world_dir = candidate.world_dir
    level_dat = candidate.level_dat
    log(f"Fixing world {world_dir}")

    root = read_level(level_dat)

    backup = level_dat.with_name(level_dat.name + BACKUP_SUFFIX)
    log(f"Backing up {LEVEL_DAT} to {backup}")
    shutil.copy2(level_dat, backup)

    world_gen = _get_world_gen_settings(root)
    if world_gen is None:
        raise FixError(f"No WorldGenSettings found in {level_dat}")

    dims = world_gen.get("dimensions")
    if not isinstance(dims, nbtlib.Compound):
        dims = nbtlib.Compound()
        world_gen["dimensions"] = dims

    end_dim = dims.get(END_DIMENSION)
    if not isinstance(end_dim, nbtlib.Compound) or not end_dim:
        log(f"No End dimension settings found in {level_dat}, creating")
        end_dim = nbtlib.Compound({"type": nbtlib.String(END_DIMENSION)})
        dims[END_DIMENSION] = end_dim
    elif "type" not in end_dim:
        end_dim["type"] = nbtlib.String(END_DIMENSION)

    end_dim["generator"] = _vanilla_end_generator()

    end_data = world_dir / END_DATA_DIR
    if end_data.exists():
        archive = world_dir / DIM_ARCHIVE_NAME
        log(f"Backing up {END_DATA_DIR} to {archive}")
        archive_directory(end_data, archive)
        log(f"Deleting {END_DATA_DIR} to force regeneration")
        delete_directory(end_data)

    marker = world_dir / MARKER
    marker.write_bytes(b"")
    log(f"Created End island reset marker at {marker}")

    _atomic_write_bytes(level_dat, serialize_level(root))
    log(f"Wrote modified {LEVEL_DAT} to {level_dat}")


def fix_all(candidates: Sequence[SaveCandidate], log=print) -> int:
    fixed = 0
    for candidate in candidates:
        try:
            apply_fix(candidate, log)
            fixed += 1
        except Exception as e:
            log(f"ERROR: Failed to fix {candidate.world_dir}: {type(e).__name__}: {e}")
    return fixed


def run(argv: Optional[Sequence[str]] = None, *, log=print) -> int:
    """
    Command line entry point. Kept separate from main() so callers can capture output via `log`.
    """
    parser = argparse.ArgumentParser(description="Repair worlds whose End was generated by BetterEnd/BCLib.")
    parser.add_argument(
        "game_dir",
        type=str,
        nargs="?",
        default=".",
        help="Game or server directory (contains server.properties, level.dat or saves/).",
    )
    parser.add_argument("--dry-run", action="store_true", help="Only report which worlds need fixing.")
    args = parser.parse_args(list(argv) if argv is not None else None)

    game_dir = Path(args.game_dir)
    if not game_dir.is_dir():
        raise SystemExit(f"Game directory not found: {game_dir}")

    log(f"Scanning {game_dir} for worlds that need fixing")
    candidates = scan_for_fixes(game_dir, log)
    if not candidates:
        log("No worlds need fixing.")
        return 0

    if args.dry_run:
        for c in candidates:
            log(f"Needs fix: {c.world_dir}")
        log(f"Dry-run: {len(candidates)} world(s) need fixing, no files were modified.")
        return 0

    fixed = fix_all(candidates, log)
    log(f"Completed. {fixed} world(s) fixed.")
    return 0 if fixed == len(candidates) else 1


def main(argv: Optional[Sequence[str]] = None) -> int:
    return run(argv, log=print)


if __name__ == "__main__":
    raise SystemExit(main())
