"""
Context formatting for answer and reflection prompts.
"""

import re
from collections.abc import Sequence
from enum import Enum

from .prompts import ANSWER_PROMPT_EN, ANSWER_PROMPT_ZH, HYPOTHETICAL_CONTEXT_HEADER
from .retriever import Source

_CJK_IDEOGRAPH = re.compile(r"[一-龥]")


class AnswerLanguage(Enum):
    ENGLISH = "english"
    CHINESE = "chinese"


def format_sources(sources: Sequence[Source], offset: int = 0) -> str:
    """Numbered `Source [i]: name` blocks, starting at offset + 1."""
    return "\n\n".join(
        f"Source [{offset + i + 1}]: {source.basename}\n{source.content}"
        for i, source in enumerate(sources)
    )


def detect_language(text: str, cjk_ratio: float = 0.15) -> AnswerLanguage:
    """Chinese when CJK ideographs make up more than cjk_ratio of the characters."""
    if not text:
        return AnswerLanguage.ENGLISH
    cjk_count = len(_CJK_IDEOGRAPH.findall(text))
    return AnswerLanguage.CHINESE if cjk_count / len(text) > cjk_ratio else AnswerLanguage.ENGLISH


def build_answer_prompt(
    question: str, sources: Sequence[Source], hypothetical_doc: str = ""
) -> tuple[str, AnswerLanguage]:
    """Build the grounded answer prompt and report which template was used."""
    texts = [s.content for s in sources]
    if hypothetical_doc:
        texts.append(hypothetical_doc)
    language = detect_language("\n\n".join(texts))

    context = format_sources(sources)
    if hypothetical_doc:
        context += HYPOTHETICAL_CONTEXT_HEADER + hypothetical_doc

    template = ANSWER_PROMPT_ZH if language is AnswerLanguage.CHINESE else ANSWER_PROMPT_EN
    return template.format(question=question, context=context), language
