"""Split ``<think>...</think>`` reasoning out of a streamed answer.

Some local models (Qwen3 on llama-server builds without a reasoning
parser) send their reasoning inline at the start of the content stream.
Chunk boundaries fall anywhere, including inside the tags, so the parser
works on the cumulative text rather than on individual chunks.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

OPEN_TAG = "<think>"
CLOSE_TAG = "</think>"


class ThinkState(Enum):
    INIT = "init"          # not enough text yet to tell
    IN_THINK = "in_think"  # inside the reasoning block
    DONE = "done"          # past the block, or there is none


@dataclass
class ThinkSplit:
    """What a single ``feed`` produced. None means 'no new snapshot'."""
    reasoning: Optional[str] = None
    answer: Optional[str] = None


class ThinkBlockExtractor:
    """Stateful splitter over the cumulative raw content of one response."""

    def __init__(self):
        self.raw = ""
        self.state = ThinkState.INIT
        self.answer_start = 0
        self.reasoning = ""
        self.answer = ""

    def feed(self, delta: str) -> ThinkSplit:
        self.raw += delta
        out = ThinkSplit()

        if self.state is ThinkState.INIT:
            trimmed = self.raw.lstrip()
            if trimmed.startswith(OPEN_TAG):
                self.state = ThinkState.IN_THINK
            elif len(trimmed) > len(OPEN_TAG) or (trimmed and not trimmed.startswith("<")):
                self.state = ThinkState.DONE

        if self.state is ThinkState.IN_THINK:
            body_start = self.raw.find(OPEN_TAG) + len(OPEN_TAG)
            close_idx = self.raw.find(CLOSE_TAG, body_start)
            if close_idx >= 0:
                self.state = ThinkState.DONE
                self.answer_start = close_idx + len(CLOSE_TAG)
                self.reasoning = self.raw[body_start:close_idx]
                out.reasoning = self.reasoning
                self.answer = self.raw[self.answer_start:].lstrip()
                if self.answer:
                    out.answer = self.answer
            else:
                self.reasoning = self.raw[body_start:]
                out.reasoning = self.reasoning
        elif self.state is ThinkState.DONE:
            self.answer = self.raw[self.answer_start:].lstrip()
            out.answer = self.answer

        return out

    def flush(self) -> ThinkSplit:
        """Settle a response that ended before the parser could decide.

        A short reply such as ``"<b>"`` never reaches eight characters, so
        it is still ``INIT`` at end of stream; it is answer text after all.
        """
        if self.state is not ThinkState.INIT:
            return ThinkSplit()
        self.state = ThinkState.DONE
        self.answer = self.raw.lstrip()
        return ThinkSplit(answer=self.answer if self.answer else None)
