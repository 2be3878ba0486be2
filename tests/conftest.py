import io
import sys
from pathlib import Path

import pytest

# Ensure the repo root is importable when tests are run without installing the package
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import nbtlib
from nbtlib import Byte, Compound, Int, List, Long, String

import betterend_fix as core

_MISSING = object()


def betterx_end():
    return Compound(
        {
            "type": String("minecraft:the_end"),
            "generator": Compound(
                {
                    "type": String(core.BAD_GENERATOR_TYPE),
                    "biome_source": Compound({"type": String("bclib:end_biome_source"), "seed": Long(42)}),
                    "settings": String("minecraft:end"),
                }
            ),
        }
    )


def build_level(end_dim=_MISSING, *, with_world_gen=True):
    """Return an nbtlib.File shaped like a 1.20 level.dat."""
    dims = Compound(
        {
            "minecraft:overworld": Compound(
                {
                    "type": String("minecraft:overworld"),
                    "generator": Compound(
                        {
                            "type": String("minecraft:noise"),
                            "biome_source": Compound(
                                {"type": String("minecraft:multi_noise"), "preset": String("minecraft:overworld")}
                            ),
                            "settings": String("minecraft:overworld"),
                        }
                    ),
                }
            ),
            "minecraft:the_nether": Compound({"type": String("minecraft:the_nether")}),
        }
    )
    if end_dim is _MISSING:
        end_dim = betterx_end()
    if end_dim is not None:
        dims["minecraft:the_end"] = end_dim

    data = Compound(
        {
            "LevelName": String("Test World"),
            "DataVersion": Int(3465),
            "Time": Long(123456789),
            "hardcore": Byte(0),
            "GameRules": Compound({"doDaylightCycle": String("true")}),
            "DataPacks": Compound({"Enabled": List[String]([String("vanilla"), String("file/betterend")])}),
        }
    )
    if with_world_gen:
        data["WorldGenSettings"] = Compound(
            {"seed": Long(-4172144997902289642), "generate_features": Byte(1), "dimensions": dims}
        )
    return nbtlib.File({"Data": data}, gzipped=True)


def write_level(world_dir: Path, root) -> Path:
    world_dir.mkdir(parents=True, exist_ok=True)
    level_dat = world_dir / core.LEVEL_DAT
    level_dat.write_bytes(core.serialize_level(root))
    return level_dat


def raw_nbt(root) -> bytes:
    buf = io.BytesIO()
    root.write(buf, byteorder="big")
    return buf.getvalue()


@pytest.fixture
def log_lines():
    return []
