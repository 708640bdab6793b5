"""Stitches transcript fragments into conversation segments."""

import logging
from dataclasses import dataclass

from conversation_scribe._types import ConversationSegment, TranscriptFragment
from conversation_scribe.config import MergerConfig
from conversation_scribe.speakers import SpeakerDirectory
from conversation_scribe.text_cleanup import clean_text
from conversation_scribe.topics import classify_topic

logger = logging.getLogger(__name__)


@dataclass
class MergeOutcome:
    """Segment produced by a reconcile call and whether it was extended."""

    segment: ConversationSegment
    merged: bool


class SegmentMerger:
    """Maintains the insertion-ordered segment log.

    A fragment extends its speaker's most recent segment when it arrives
    within the merge window and no other speaker's segment ended in
    between; otherwise it opens a new segment. Log order is the order in
    which segments were finalized, which can differ from audio order when
    one speaker's transcription returns faster than another's.
    """

    def __init__(
        self,
        speakers: SpeakerDirectory | None = None,
        config: MergerConfig | None = None,
    ):
        self.speakers = speakers or SpeakerDirectory()
        self.config = config or MergerConfig()
        self._segments: list[ConversationSegment] = []
        self._last_index: dict[str, int] = {}

    @property
    def segments(self) -> list[ConversationSegment]:
        return list(self._segments)

    def __len__(self) -> int:
        return len(self._segments)

    def last_segment_for(self, speaker_key: str) -> ConversationSegment | None:
        index = self._last_index.get(speaker_key)
        return self._segments[index] if index is not None else None

    def reconcile(self, fragment: TranscriptFragment) -> MergeOutcome | None:
        """Merge ``fragment`` into the log.

        Returns:
            The new or extended segment, or None if cleanup left no text
        """
        text = clean_text(fragment.text) if self.config.clean_text else fragment.text.strip()
        if not text:
            logger.debug("Fragment for %s empty after cleanup, dropped", fragment.speaker_key)
            return None

        last = self.last_segment_for(fragment.speaker_key)
        if last is not None and self._can_merge(last, fragment):
            self._extend(last, fragment, text)
            logger.debug("Merged fragment into segment for %s (%.1fs)", last.speaker, last.duration_seconds)
            return MergeOutcome(segment=last, merged=True)

        segment = ConversationSegment(
            speaker=self.speakers.display_name(fragment.speaker_key),
            text=text,
            topic=classify_topic(text),
            start_time=fragment.timestamp,
            end_time=fragment.end_time,
            duration_seconds=fragment.duration_seconds,
            confidence=fragment.confidence,
            stream_id=fragment.speaker_key,
        )
        self._segments.append(segment)
        self._last_index[fragment.speaker_key] = len(self._segments) - 1
        logger.info(
            "New segment: %s [%s] %.1fs: %.50s",
            segment.speaker,
            segment.topic,
            segment.duration_seconds,
            segment.text,
        )
        return MergeOutcome(segment=segment, merged=False)

    def _can_merge(self, last: ConversationSegment, fragment: TranscriptFragment) -> bool:
        if fragment.timestamp - last.end_time >= self.config.merge_window:
            return False

        for other in self._segments[-self.config.lookback:]:
            if other.stream_id == fragment.speaker_key:
                continue
            if last.end_time < other.end_time < fragment.timestamp:
                logger.debug(
                    "Intervening segment from %s vetoes merge for %s",
                    other.stream_id,
                    fragment.speaker_key,
                )
                return False
        return True

    def _extend(self, segment: ConversationSegment, fragment: TranscriptFragment, text: str) -> None:
        total = segment.duration_seconds + fragment.duration_seconds
        if total > 0:
            segment.confidence = (
                segment.confidence * segment.duration_seconds
                + fragment.confidence * fragment.duration_seconds
            ) / total
        segment.text = _join_text(segment.text, text)
        segment.duration_seconds = total
        segment.end_time = max(segment.end_time, fragment.end_time)
        segment.topic = classify_topic(segment.text)

    def to_record(self) -> dict:
        return {
            "segments": [segment.to_dict() for segment in self._segments],
            "last_index": dict(self._last_index),
        }

    def restore(self, record: dict) -> None:
        self._segments = [ConversationSegment.from_dict(data) for data in record.get("segments", [])]
        self._last_index = {
            key: int(index)
            for key, index in record.get("last_index", {}).items()
            if 0 <= int(index) < len(self._segments)
        }


def _join_text(previous: str, text: str) -> str:
    """Append a cleaned fragment, continuing the sentence when one is open."""
    if not previous:
        return text
    if previous.rstrip().endswith((".", "!", "?")) or not text:
        return f"{previous} {text}"
    first_word = text.split(maxsplit=1)[0]
    # "I", "I'm" and acronyms keep their capitals mid-sentence.
    if first_word == "I" or first_word.startswith("I'") or (len(first_word) > 1 and first_word.isupper()):
        return f"{previous} {text}"
    return f"{previous} {text[0].lower()}{text[1:]}"
