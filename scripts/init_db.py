from __future__ import annotations

import argparse
from pathlib import Path

from alembic import command
from alembic.config import Config

from ticketvault.core.logging import configure_logging


_ALEMBIC_INI = Path(__file__).resolve().parents[1] / "alembic.ini"


def main() -> None:
    # Apply migrations up to the requested revision; env.py reads DATABASE_URL.
    parser = argparse.ArgumentParser(description="Migrate the ticketvault schema")
    parser.add_argument("--revision", default="head")
    args = parser.parse_args()

    configure_logging()
    config = Config(str(_ALEMBIC_INI))
    config.set_main_option("script_location", str(_ALEMBIC_INI.parent / "ticketvault" / "persistence" / "alembic"))
    command.upgrade(config, args.revision)
    print(f"revision={args.revision}")


if __name__ == "__main__":
    main()
