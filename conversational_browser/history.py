"""
Conversation history management.

Keeps the role-tagged turns of the running conversation and bounds their
size: old turns are pruned and screenshots are replaced by placeholders.
"""

import logging
import threading

from .types import ConversationTurn, ImageBlock, Role, TextBlock, ToolResultPart

logger = logging.getLogger(__name__)

IMAGE_PLACEHOLDER = "[image omitted]"


class ConversationHistory:
    """Ordered list of conversation turns.

    Both ``prune`` and ``strip_images`` are idempotent and never remove the
    text of a kept turn.
    """

    def __init__(self):
        self._turns: list[ConversationTurn] = []
        self._lock = threading.Lock()

    def append(self, turn: ConversationTurn) -> None:
        with self._lock:
            self._turns.append(turn)

    def turns(self) -> list[ConversationTurn]:
        """Return a snapshot copy of the turns."""
        with self._lock:
            return list(self._turns)

    def clear(self) -> None:
        with self._lock:
            self._turns.clear()

    def __len__(self) -> int:
        return len(self._turns)

    def prune(self, max_turns: int) -> None:
        """Keep the most recent ``max_turns`` turns.

        The kept window is then advanced to its first user turn, so the history
        never opens with an orphaned tool call or tool result. A window with no
        user turn is dropped entirely.
        """
        with self._lock:
            if max_turns <= 0:
                self._turns.clear()
                return
            window = self._turns[-max_turns:]
            start = next(
                (i for i, turn in enumerate(window) if turn.role == Role.USER),
                len(window),
            )
            removed = len(self._turns) - (len(window) - start)
            if removed:
                logger.debug("Pruned %d turns from history", removed)
            self._turns = window[start:]

    def strip_images(self, keep_last: int = 0) -> None:
        """Replace screenshots with a text placeholder.

        Args:
            keep_last: Number of most recent image-bearing turns left intact
        """
        with self._lock:
            kept = 0
            for index in range(len(self._turns) - 1, -1, -1):
                turn = self._turns[index]
                if not turn.has_image:
                    continue
                if kept < keep_last:
                    kept += 1
                    continue
                self._turns[index] = _without_images(turn)


def _without_images(turn: ConversationTurn) -> ConversationTurn:
    parts = []
    for part in turn.parts:
        if isinstance(part, ToolResultPart) and part.images:
            blocks = tuple(
                TextBlock(IMAGE_PLACEHOLDER) if isinstance(b, ImageBlock) else b
                for b in part.blocks
            )
            part = ToolResultPart(part.call_id, part.name, blocks, part.is_error)
        parts.append(part)
    return ConversationTurn(turn.role, parts)
