"""Thinking-mode resolution: whether a request should ask for reasoning.

The ambient mode chosen in the sidebar is reconciled with inline
``/think`` / ``/no_think`` directives found in the prompt, and a few
backend quirks are layered on top (models that ignore ``think: false``,
fixed sampling presets for the Qwen3 family).
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Union


class ThinkingMode(Enum):
    """Reasoning level requested by the user."""
    OFF = "off"
    QUICK = "quick"
    DEEP = "deep"

    @classmethod
    def parse(cls, value: Union[str, "ThinkingMode", None],
              default: Optional["ThinkingMode"] = None) -> "ThinkingMode":
        if isinstance(value, cls):
            return value
        if value is None or not str(value).strip():
            return default or cls.QUICK
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(
                f"Unknown thinking mode {value!r}; expected one of: "
                + ", ".join(m.value for m in cls)
            )


THINK_DIRECTIVE = "/think"
NO_THINK_DIRECTIVE = "/no_think"

# A directive starts the text or follows whitespace; "host/think" in a URL is not one.
_DIRECTIVE_RE = re.compile(r"(?<!\S)/(think|no_think)\b")

# System message prepended in quick mode.
QUICK_THINKING_INSTRUCTION = (
    "Keep your reasoning brief: think only as much as needed, "
    "then give the answer."
)

# Models that keep emitting reasoning when sent think=false. For these the
# parameter is left out and the /no_think directive does the work.
THINK_FALSE_DENYLIST = (
    "deepseek-r1",
    "qwq",
    "gpt-oss",
)

# Qwen3 recommended sampling, selected by whether reasoning is on.
QWEN3_THINKING_SAMPLING: Dict[str, Any] = {
    "temperature": 0.6,
    "top_p": 0.95,
    "top_k": 20,
    "min_p": 0.0,
}
QWEN3_NON_THINKING_SAMPLING: Dict[str, Any] = {
    "temperature": 0.7,
    "top_p": 0.8,
    "top_k": 20,
    "min_p": 0.0,
}


@dataclass(frozen=True)
class ThinkingResolution:
    """Outcome of reconciling the requested mode with the prompt."""
    thinking: bool
    mode: ThinkingMode
    prompt_to_send: str
    directive: Optional[str] = None

    @property
    def is_quick(self) -> bool:
        return self.thinking and self.mode is ThinkingMode.QUICK


def find_directive(prompt: str) -> Optional[str]:
    """Return the last ``/think`` or ``/no_think`` directive in *prompt*."""
    last = None
    for match in _DIRECTIVE_RE.finditer(prompt or ""):
        last = "/" + match.group(1)
    return last


def has_directive(text: str) -> bool:
    return find_directive(text) is not None


def resolve_thinking_mode(
    prompt: str,
    requested: Union[ThinkingMode, str],
) -> ThinkingResolution:
    """Decide whether reasoning is on and what prompt text to send.

    Priority:
      1. An explicit directive in the prompt (last one wins). ``/think``
         escalates ``off`` to ``deep`` and keeps ``quick``/``deep``;
         ``/no_think`` turns reasoning off.
      2. Requested ``off``: reasoning off, `` /no_think`` appended to the
         prompt. This is the only case that changes the prompt.
      3. ``quick`` / ``deep``: reasoning on, prompt unchanged.
    """
    mode = ThinkingMode.parse(requested)
    prompt = prompt or ""
    directive = find_directive(prompt)

    if directive == THINK_DIRECTIVE:
        effective = ThinkingMode.DEEP if mode is ThinkingMode.OFF else mode
        return ThinkingResolution(True, effective, prompt, directive)
    if directive == NO_THINK_DIRECTIVE:
        return ThinkingResolution(False, ThinkingMode.OFF, prompt, directive)
    if mode is ThinkingMode.OFF:
        return ThinkingResolution(
            False, ThinkingMode.OFF, f"{prompt} {NO_THINK_DIRECTIVE}", None
        )
    return ThinkingResolution(True, mode, prompt, None)


def _model_key(model: str) -> str:
    """Lowercased model name without registry namespace (``library/qwq:32b`` -> ``qwq:32b``)."""
    key = (model or "").strip().lower()
    return key.rsplit("/", 1)[-1]


def ignores_think_false(model: str) -> bool:
    key = _model_key(model)
    return any(key.startswith(prefix) for prefix in THINK_FALSE_DENYLIST)


def think_parameter(thinking: bool, model: str) -> Optional[bool]:
    """Value for the backend's boolean ``think`` field, or None to omit it."""
    if thinking:
        return True
    if ignores_think_false(model):
        return None
    return False


def is_qwen3_family(model: str) -> bool:
    key = _model_key(model).replace("-", "").replace("_", "")
    return key.startswith("qwen3")


def sampling_preset(model: str, thinking: bool) -> Optional[Dict[str, Any]]:
    """Fixed sampling parameters for the Qwen3 family, None for everyone else."""
    if not is_qwen3_family(model):
        return None
    preset = QWEN3_THINKING_SAMPLING if thinking else QWEN3_NON_THINKING_SAMPLING
    return dict(preset)
