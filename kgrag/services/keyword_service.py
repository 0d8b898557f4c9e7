"""
KeywordService - Resolves the high-level / low-level keyword sets that drive
the graph probes, from explicit overrides or an LLM extractor.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional, Tuple

from langchain_core.prompts import PromptTemplate
from langchain_openai import ChatOpenAI
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
)

from kgrag import config
from kgrag.models import ProbeFailure, QueryMode, QueryParam, unique_items
from kgrag.services.interfaces import IKeywordExtractor

logger = logging.getLogger(__name__)

KEYWORD_PROBE = "keyword_extraction"

# =============================================================================
# KEYWORD EXTRACTION PROMPT
# =============================================================================
KEYWORD_EXTRACTION_TEMPLATE = """You extract search keywords for a knowledge graph retrieval system.

Split the keywords of the user's query into two lists:
- high_level_keywords: overarching concepts, themes, or kinds of relationships
  the query is about.
- low_level_keywords: concrete entities, names, terms, and specific details
  mentioned in or implied by the query.

Output STRICT JSON only with this shape:
{{"high_level_keywords": ["..."], "low_level_keywords": ["..."]}}

Rules:
1) Use short phrases, not sentences.
2) Keep the language of the query.
3) Return empty lists when the query carries no meaningful keywords.
4) No markdown. No explanation text.

Query:
{query}
"""

KEYWORD_EXTRACTION_PROMPT = PromptTemplate(
    input_variables=["query"], template=KEYWORD_EXTRACTION_TEMPLATE
)


def parse_keyword_payload(content: Any) -> Tuple[List[str], List[str]]:
    """Parse the extractor's JSON answer into (high-level, low-level) lists."""
    if isinstance(content, list):
        content = "".join(
            item.get("text", "") if isinstance(item, dict) else str(item)
            for item in content
        )

    text = str(content or "").strip()
    if text.startswith("```"):
        text = text.strip("`")
        if text.lower().startswith("json"):
            text = text[4:]
        text = text.strip()

    parsed = json.loads(text)
    if not isinstance(parsed, dict):
        raise ValueError("Keyword payload is not a JSON object")

    def _strings(key: str) -> List[str]:
        values = parsed.get(key) or []
        if not isinstance(values, list):
            raise ValueError(f"'{key}' is not a list")
        return list(unique_items(v for v in values if isinstance(v, str)))

    return _strings("high_level_keywords"), _strings("low_level_keywords")


class LLMKeywordExtractor(IKeywordExtractor):
    """Keyword extraction with a chat model returning JSON."""

    def __init__(self, llm: Optional[ChatOpenAI] = None):
        self._llm = llm

    @property
    def llm(self) -> ChatOpenAI:
        """Lazy initialization of LLM."""
        if self._llm is None:
            self._llm = ChatOpenAI(
                temperature=config.LLM_TEMPERATURE,
                model_name=config.LLM_MODEL,
                request_timeout=config.LLM_REQUEST_TIMEOUT,
            )
        return self._llm

    @retry(
        stop=stop_after_attempt(config.MAX_RETRIES),
        wait=wait_exponential(multiplier=config.RETRY_DELAY_SECONDS, min=2, max=30),
        retry=retry_if_exception_type((TimeoutError, ConnectionError)),
        reraise=True,
    )
    def _invoke(self, prompt: str) -> Any:
        return self.llm.invoke(prompt).content

    def extract(self, query: str) -> Tuple[List[str], List[str]]:
        prompt = KEYWORD_EXTRACTION_PROMPT.format(query=query)
        return parse_keyword_payload(self._invoke(prompt))


@dataclass
class ResolvedKeywords:
    hl_keywords: List[str] = field(default_factory=list)
    ll_keywords: List[str] = field(default_factory=list)
    failures: List[ProbeFailure] = field(default_factory=list)

    @staticmethod
    def _probe_text(keywords: List[str], query: str) -> str:
        return ", ".join(keywords) if keywords else query

    def low_level_probe(self, query: str) -> str:
        """Entity probe text; the raw query when no low-level keywords exist."""
        return self._probe_text(self.ll_keywords, query)

    def high_level_probe(self, query: str) -> str:
        """Relationship probe text; the raw query when no high-level keywords exist."""
        return self._probe_text(self.hl_keywords, query)


class KeywordService:
    """
    Keyword resolution rules:
    - bypass and naive never extract.
    - Both overrides supplied: extraction is skipped.
    - One override supplied: extraction fills the other side.
    - Extractor failure: no keywords, failure recorded for diagnostics.
    """

    def __init__(self, extractor: Optional[IKeywordExtractor] = None):
        self.extractor = extractor

    def resolve(self, query: str, param: QueryParam) -> ResolvedKeywords:
        hl = list(param.hl_keywords)
        ll = list(param.ll_keywords)

        if param.mode in (QueryMode.BYPASS, QueryMode.NAIVE):
            return ResolvedKeywords(hl, ll)

        if hl and ll:
            logger.debug("Using keyword overrides, extraction skipped")
            return ResolvedKeywords(hl, ll)

        if self.extractor is None:
            logger.debug("No keyword extractor configured; probing with the raw query")
            return ResolvedKeywords(hl, ll)

        try:
            extracted_hl, extracted_ll = self.extractor.extract(query)
        except Exception as e:
            logger.warning("Keyword extraction failed, falling back to raw query: %s", e)
            return ResolvedKeywords(
                hl, ll, [ProbeFailure(KEYWORD_PROBE, f"{type(e).__name__}: {e}")]
            )

        resolved = ResolvedKeywords(
            hl or list(unique_items(extracted_hl)),
            ll or list(unique_items(extracted_ll)),
        )
        logger.debug(
            "Resolved keywords hl=%s ll=%s", resolved.hl_keywords, resolved.ll_keywords
        )
        return resolved
