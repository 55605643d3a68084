"""
Retrieval pipeline: turns a caller's question into grounded context.

Order of attempts:
1. Model-generated SQL (translate -> execute -> record -> summarize)
2. Keyword fallback over fixed parameterized queries
3. A generic apology, so callers of `answer()` never see an exception
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import structlog

from src.callbridge.config import Config, get_config
from src.callbridge.context_store import ConversationContextStore
from src.callbridge.db import DataAccessLayer
from src.callbridge.fallback import FALLBACK_INTENTS, NO_INFORMATION_MESSAGE, FallbackIntent, match_intent
from src.callbridge.grounding import GroundingError, GroundingService
from src.callbridge.sql_utils import OperationKind, classify_statement, statement_keyword

logger = structlog.get_logger(__name__)

SQL_SOURCE = "SQL Database"
NONE_SOURCE = "none"
ERROR_SOURCE = "error"

ERROR_MESSAGE = (
    "I encountered an issue while searching for information. "
    "Please try rephrasing your question."
)


@dataclass(frozen=True)
class RagAnswer:
    """Context text for grounding plus where it came from."""
    context: str
    source: str

    @property
    def has_information(self) -> bool:
        return self.source != NONE_SOURCE and bool(self.context)


class RetrievalPipeline:
    """
    Per-session retrieval pipeline.

    The data layer and grounding service are shared; the context store belongs
    to the call session that owns this pipeline.
    """

    def __init__(
        self,
        data_access: DataAccessLayer,
        grounding: GroundingService,
        context_store: Optional[ConversationContextStore] = None,
        *,
        config: Optional[Config] = None,
        intents: tuple[FallbackIntent, ...] = FALLBACK_INTENTS,
    ):
        self.config = config or get_config()
        self.data_access = data_access
        self.grounding = grounding
        self.context_store = context_store or ConversationContextStore(self.config.context_history_size)
        self.intents = intents

    async def answer(self, question: str) -> RagAnswer:
        """Best-effort grounded answer; never raises."""
        try:
            logger.info("Processing query", query=question)
            try:
                result = await self.answer_with_generated_query(question)
                logger.info("NL query successful", source=result.source)
                return result
            except Exception as e:
                logger.warning("NL query processing failed, falling back to pattern matching", error=str(e))
                return await self.answer_with_pattern_matching(question)
        except Exception as e:
            logger.error("Retrieval failed", error=str(e))
            return RagAnswer(context=ERROR_MESSAGE, source=ERROR_SOURCE)

    async def answer_with_generated_query(self, question: str) -> RagAnswer:
        recent = self.context_store.recent(self.config.context_prompt_turns)
        sql_query = await self.grounding.translate(question, recent)

        query_type = statement_keyword(sql_query)
        if classify_statement(sql_query) == OperationKind.WRITE and not self.config.allow_write_queries:
            raise GroundingError(f"{query_type} statements are disabled")

        result = await self.data_access.execute(sql_query)
        self.context_store.record_query(sql_query, query_type, result, natural_language_query=question)

        summary = await self.grounding.summarize(question, query_type, result)
        return RagAnswer(context=summary, source=SQL_SOURCE)

    async def answer_with_pattern_matching(self, question: str) -> RagAnswer:
        intent = match_intent(question, self.intents)
        if intent is None:
            return RagAnswer(context=NO_INFORMATION_MESSAGE, source=NONE_SOURCE)

        entity = intent.extract_entity(question)
        query, params = intent.build_query(entity)
        logger.info("Fallback lookup", intent=intent.name, entity=entity)

        result = await self.data_access.execute(query, params)
        self.context_store.record_query(query, "SELECT", result, natural_language_query=question)

        return RagAnswer(context=intent.render(result.rows or []), source=intent.source)
