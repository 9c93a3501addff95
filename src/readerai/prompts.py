"""Prompt templates for the sidebar's translate and explain actions."""

import re
from dataclasses import dataclass
from typing import Optional

_CJK_RE = re.compile(r"[\u4e00-\u9fff]")
_LATIN_RE = re.compile(r"[A-Za-z]")

EN_TO_ZH = "en_to_zh"
ZH_TO_EN = "zh_to_en"


@dataclass
class PromptTemplates:
    """User-editable templates; ``{text}`` is replaced with the selection."""

    translate_literal: str = (
        "请将以下英文文本直译为中文，保持原文的句式结构，尽量逐字逐句翻译：\n\n{text}\n\n直译结果："
    )
    translate_free: str = (
        "请将以下英文文本意译为中文，保持原文的核心含义，用自然流畅的中文表达：\n\n{text}\n\n意译结果："
    )
    translate_plain: str = (
        "请用简单易懂的白话解释以下英文文本的含义，就像给一个不懂专业术语的人解释一样：\n\n{text}\n\n白话解释："
    )
    translate_literal_zh_to_en: str = (
        "请将以下中文文本直译为英文，保持原文的句式结构，尽量逐字逐句翻译：\n\n{text}\n\nLiteral translation:"
    )
    translate_free_zh_to_en: str = (
        "请将以下中文文本意译为英文，保持原文的核心含义，用自然流畅的英文表达：\n\n{text}\n\nFree translation:"
    )
    translate_plain_zh_to_en: str = (
        "Please explain the meaning of the following Chinese text in simple English:\n\n{text}\n\nExplanation:"
    )
    explain: str = (
        "请详细解释以下英文文本的语法结构：\n\n{text}\n\n请提供：\n"
        "1. 句子成分分析（主语、谓语、宾语、定语、状语等）\n2. 关键语法点解释\n"
        "3. 重要词汇用法\n4. 整体含义解读\n\n文法解释："
    )
    explain_zh_to_en: str = (
        "Please explain the grammar of the following Chinese text in English.\n\n"
        "Text:\n{text}\n\nProvide:\n1. Sentence structure analysis\n2. Key grammar points\n"
        "3. Important vocabulary usage\n4. Overall meaning\n\nGrammar explanation (in English):"
    )


def detect_direction(text: str) -> str:
    """``zh_to_en`` when the text is mostly CJK, ``en_to_zh`` otherwise."""
    s = text or ""
    cjk = len(_CJK_RE.findall(s))
    latin = len(_LATIN_RE.findall(s))
    if cjk > 0 and latin == 0:
        return ZH_TO_EN
    if latin > 0 and cjk == 0:
        return EN_TO_ZH
    if cjk > latin:
        return ZH_TO_EN
    return EN_TO_ZH


def build_translate_prompt(text: str, mode: str,
                           templates: Optional[PromptTemplates] = None) -> str:
    """Fill the translate template for *mode* (``literal``, ``free`` or ``plain``).

    Unknown modes fall back to ``free``.
    """
    t = templates or PromptTemplates()
    if detect_direction(text) == ZH_TO_EN:
        template = {
            "literal": t.translate_literal_zh_to_en,
            "plain": t.translate_plain_zh_to_en,
        }.get(mode, t.translate_free_zh_to_en)
    else:
        template = {
            "literal": t.translate_literal,
            "plain": t.translate_plain,
        }.get(mode, t.translate_free)
    return template.replace("{text}", text)


def build_explain_prompt(text: str, templates: Optional[PromptTemplates] = None) -> str:
    t = templates or PromptTemplates()
    template = t.explain_zh_to_en if detect_direction(text) == ZH_TO_EN else t.explain
    return template.replace("{text}", text)
