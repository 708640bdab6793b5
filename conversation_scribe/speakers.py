"""Speaker display-name resolution."""

import hashlib
import logging
from collections.abc import Mapping

logger = logging.getLogger(__name__)

LOCAL_STREAM_KEY = "local-stream"
REMOTE_AUDIO_PREFIX = "msRemAudio-"

DEFAULT_ALIASES = {
    "XRcupJu26dK_sazaAAPK": "DP",
    "O3e0pz1234K_cazaAAPK": "Kira",
}


class SpeakerDirectory:
    """Maps speaker keys to display names, stable for the session."""

    def __init__(self, aliases: Mapping[str, str] | None = None):
        self.aliases = dict(DEFAULT_ALIASES)
        if aliases:
            self.aliases.update(aliases)
        self._names: dict[str, str] = {}

    def display_name(self, speaker_key: str) -> str:
        if not speaker_key:
            return "Unknown Speaker"

        name = self._names.get(speaker_key)
        if name is None:
            name = self._resolve(speaker_key)
            self._names[speaker_key] = name
            logger.debug("Mapped stream %s to %s", speaker_key, name)
        return name

    def _resolve(self, speaker_key: str) -> str:
        if speaker_key == LOCAL_STREAM_KEY:
            return "Me"

        user_part = speaker_key
        if speaker_key.startswith(REMOTE_AUDIO_PREFIX):
            user_part = speaker_key[len(REMOTE_AUDIO_PREFIX):]

        user_id = user_part.split("-")[0]
        if user_id in self.aliases:
            return self.aliases[user_id]
        if speaker_key in self.aliases:
            return self.aliases[speaker_key]

        if speaker_key.startswith(REMOTE_AUDIO_PREFIX) and len(user_id) >= 6:
            return f"Speaker {user_id[:6]}"
        if len(user_id) >= 6:
            return f"Speaker-{user_id[:6].upper()}"
        digest = hashlib.sha1(speaker_key.encode("utf-8")).hexdigest()[:6].upper()
        return f"Speaker-{digest}"

    def to_record(self) -> dict[str, str]:
        return dict(self._names)

    def restore(self, record: Mapping[str, str]) -> None:
        self._names.update(record)
