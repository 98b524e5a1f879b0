from typing import Any, Dict, Iterator, List, Optional

from core.config_loader import ConfigLoader
from core.context import Talent
from shared.errors import ConfigError
from shared.logging.logger import get_logger

log = get_logger("core.registry")


class TalentRegistry:
    """
    Read-only roster of tracked talents, keyed by channel id.
    """

    def __init__(self, config_loader: Optional[ConfigLoader] = None):
        self._config_loader = config_loader or ConfigLoader()
        self._talents: Dict[str, Talent] = {}

    def load(self, talents_data: Optional[List[Dict[str, Any]]] = None) -> Dict[str, Talent]:
        raw_talents = (
            talents_data
            if talents_data is not None
            else self._config_loader.load_talents_config()
        )

        out: Dict[str, Talent] = {}
        for entry in raw_talents:
            if not entry.get("enabled", True):
                log.info(f"[{entry.get('id')}] Talent disabled; excluded from tracking")
                continue

            try:
                talent = Talent.from_dict(entry)
            except ValueError as e:
                log.warning(f"Skipping talent entry: {e}")
                continue

            if talent.id in out:
                log.warning(f"[{talent.id}] Duplicate talent entry; keeping the first")
                continue

            out[talent.id] = talent

        if not out:
            raise ConfigError("No trackable talents configured")

        self._talents = out
        log.info(f"Loaded {len(out)} tracked talent(s)")
        return dict(out)

    # ------------------------------------------------------------------

    def get(self, channel_id: str) -> Optional[Talent]:
        return self._talents.get(channel_id)

    def channel_ids(self) -> List[str]:
        return list(self._talents.keys())

    def __iter__(self) -> Iterator[Talent]:
        return iter(self._talents.values())

    def __len__(self) -> int:
        return len(self._talents)
