"""
Configuration validation script.

Validates tracking.json against its JSON schema and checks that
talents.json yields at least one trackable talent.

Design rules:
- No side effects on import
- No runtime startup
- Validation only (no mutation)
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import List, Optional

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from core.config_loader import ConfigLoader  # noqa: E402
from core.registry import TalentRegistry  # noqa: E402
from shared.errors import ConfigError  # noqa: E402


def _error(msg: str):
    print(f"[CONFIG ERROR] {msg}", file=sys.stderr)


def validate(loader: ConfigLoader) -> bool:
    ok = True

    for warning in loader.validate_tracking_config():
        _error(warning)
        ok = False

    config = loader.load_tracking_config()
    guild = config.guild
    if guild.chat.enabled and guild.chat.category_id is None:
        _error("tracking.json: guild.chat is enabled but has no category_id")
        ok = False
    if guild.alerts.enabled and guild.alerts.channel_id is None:
        _error("tracking.json: guild.alerts is enabled but has no channel_id")
        ok = False

    try:
        talents = TalentRegistry(loader).load()
    except ConfigError as e:
        _error(str(e))
        return False

    print(f"{len(talents)} trackable talent(s) configured.")
    return ok


# ------------------------------------------------------------
# Entry point
# ------------------------------------------------------------

def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Validate stream tracker configuration")
    parser.add_argument("--tracking", type=Path, default=None, help="Path to tracking.json")
    parser.add_argument("--talents", type=Path, default=None, help="Path to talents.json")
    parser.add_argument("--schema", type=Path, default=None, help="Path to tracking.schema.json")
    args = parser.parse_args(argv)

    loader = ConfigLoader(
        tracking_path=args.tracking,
        talents_path=args.talents,
        schema_path=args.schema,
    )

    if not validate(loader):
        print("Configuration validation failed.", file=sys.stderr)
        return 1

    print("Configuration validation passed.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
