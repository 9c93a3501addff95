"""Normalized stream events shared by every backend adapter.

Text payloads are cumulative snapshots: each ``Reasoning``/``Answer`` event
carries everything accumulated so far, not the latest delta.
"""

from dataclasses import dataclass
from typing import Callable, Optional, Union


@dataclass(frozen=True)
class Reasoning:
    text: str


@dataclass(frozen=True)
class Answer:
    text: str


@dataclass(frozen=True)
class Done:
    pass


@dataclass(frozen=True)
class Error:
    message: str


StreamEvent = Union[Reasoning, Answer, Done, Error]


@dataclass
class StreamCallbacks:
    """Receivers for the four-event contract. Any of them may be left out."""
    on_reasoning: Optional[Callable[[str], None]] = None
    on_answer: Optional[Callable[[str], None]] = None
    on_done: Optional[Callable[[], None]] = None
    on_error: Optional[Callable[[str], None]] = None

    @classmethod
    def from_sink(cls, sink: Callable[[StreamEvent], None]) -> "StreamCallbacks":
        """Route every callback into one function taking a ``StreamEvent``."""
        return cls(
            on_reasoning=lambda text: sink(Reasoning(text)),
            on_answer=lambda text: sink(Answer(text)),
            on_done=lambda: sink(Done()),
            on_error=lambda message: sink(Error(message)),
        )

    def dispatch(self, event: StreamEvent) -> None:
        if isinstance(event, Reasoning):
            if self.on_reasoning:
                self.on_reasoning(event.text)
        elif isinstance(event, Answer):
            if self.on_answer:
                self.on_answer(event.text)
        elif isinstance(event, Done):
            if self.on_done:
                self.on_done()
        elif isinstance(event, Error):
            if self.on_error:
                self.on_error(event.message)
        else:
            raise TypeError(f"Unknown stream event: {event!r}")
