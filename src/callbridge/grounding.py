"""
Azure OpenAI chat wrapper for the retrieval pipeline.

Provides:
- Natural language -> SQL Server translation grounded in the fixed schema
- Natural-language summaries of query results in the caller's language
"""

from __future__ import annotations

import json
from typing import Any, Optional, Sequence

import openai
import structlog
from openai import AsyncAzureOpenAI

from src.callbridge.config import Config, get_config
from src.callbridge.context_store import ConversationTurn
from src.callbridge.db import QueryResult
from src.callbridge.sql_utils import clean_sql_query, fix_sql_syntax

logger = structlog.get_logger(__name__)


class GroundingError(Exception):
    """Raised when the grounding model cannot produce a usable query."""
    pass


SCHEMA_CONTEXT = """
Database Schema Definition:

clients table:
  - id (int) NOT NULL PRIMARY KEY
  - name (nvarchar(100)) NOT NULL
  - email (nvarchar(255)) NOT NULL
  - montantfactures (decimal(10, 2)) NULL
  - IsInformed (bit) NULL
  - IsBlocked (bit) NULL

factures table:
  - id (int) NOT NULL PRIMARY KEY
  - NumerFacture (nvarchar(50)) NOT NULL
  - MontantFacture (decimal(10, 2)) NOT NULL
  - DelaiDePaiement (int) NOT NULL
  - DateFacturation (date) NOT NULL
  - DateEcheance (date) NOT NULL
  - clientId (int) NULL FOREIGN KEY REFERENCES clients(id)

ArticleCiments table:
  - Article_Id (int) IDENTITY(1,1) NOT NULL PRIMARY KEY
  - Id_Site (int) NULL
  - Designation (nvarchar(150)) NOT NULL
  - Tarif (decimal(20, 2)) NULL
  - Disponibilité (bit) NULL

Region table:
  - Region_Id (int) NOT NULL PRIMARY KEY
  - Region_Libelle (nvarchar(100)) NULL

Relationships:
- factures.clientId -> clients.id (Many-to-one)
"""

SQL_SYSTEM_PROMPT = """You are an expert SQL developer specializing in SQL Server syntax.
Your task is to convert natural language questions into valid SQL queries that can be executed against a SQL Server database.

{schema}

{context}

IMPORTANT: Return ONLY the pure SQL statement with no markdown formatting, code blocks, or explanations.

IMPORTANT SQL SYNTAX RULES:
1. This is for SQL Server (NOT MySQL or PostgreSQL)
2. Use TOP instead of LIMIT (e.g., "SELECT TOP 10 * FROM table" not "SELECT * FROM table LIMIT 10")
3. For date functions, use proper SQL Server syntax (e.g., DATEADD, DATEDIFF)
4. Use square brackets [column] for column names with spaces
5. DO NOT use backticks (`) as they are MySQL syntax and will cause errors in SQL Server

Instructions:
1. Generate only the SQL query without any explanations or comments
2. Use standard SQL Server syntax
3. Include proper table aliases for readability and to avoid ambiguity
4. Create appropriate JOINs when queries involve multiple tables
5. For questions about availability, translate "Disponibilité" column values: 1 = Available, 0 = Not available
6. For date comparisons, use ISO format (YYYY-MM-DD)
7. For aggregate queries (COUNT, SUM, AVG), include proper GROUP BY clauses
8. The queries will be executed directly, so ensure they are valid and safe
9. Write literal values inline; do not leave @param placeholders"""

SUMMARY_SYSTEM_PROMPT = """You are a helpful assistant that converts database query results into natural language summaries.
Your task is to give a clear, concise, and natural-sounding summary of the database query results.

Guidelines:
1. Be conversational and natural in your response
2. Summarize the key findings from the data
3. For empty results, explain that nothing was found for the query
4. For cement products, mention both designation and price
5. For client information, be professional and concise
6. Format currency values appropriately (e.g., "1200.50 DH")
7. Avoid using technical terminology unless necessary
8. IMPORTANT: Respond in the SAME LANGUAGE as the user's original query.
   If the user's query is in French, respond in French.
   If the user's query is in English, respond in English.
   If the user's query is in Arabic, respond in Arabic."""


def format_recent_turns(turns: Sequence[ConversationTurn]) -> str:
    if not turns:
        return ""
    lines = ["Recent conversation context:"]
    for i, turn in enumerate(turns, start=1):
        lines.append(f"{i}. {turn.describe()}")
    return "\n".join(lines)


def format_results_for_prompt(query_type: str, result: QueryResult, sample_rows: int = 10) -> str:
    """Serialize at most `sample_rows` rows, noting truncation."""
    if result.returns_rows:
        rows = result.rows or []
        text = json.dumps(rows[:sample_rows], indent=2, ensure_ascii=False, default=str)
        if len(rows) > sample_rows:
            text += f"\n\n(Showing {sample_rows} of {len(rows)} results)"
        return text
    if query_type in ("INSERT", "UPDATE", "DELETE", "MERGE"):
        return f"{query_type} operation affected {result.rows_affected} rows."
    return "No results found."


def degraded_summary(query_type: str, result: QueryResult, *, rate_limited: bool = False) -> str:
    """Deterministic summary used when the model cannot summarize."""
    if result.returns_rows:
        summary = f"Found {len(result)} results for your query."
        if rate_limited:
            summary += " (Rate limit reached, detailed summary unavailable)"
        return summary
    if query_type in ("INSERT", "UPDATE", "DELETE", "MERGE"):
        return f"Operation complete. {result.rows_affected} records affected."
    return "Query completed, but couldn't generate a summary of the results."


def _translation_error(error: Exception) -> GroundingError:
    if isinstance(error, openai.RateLimitError):
        return GroundingError("Azure OpenAI rate limit exceeded. Please try again later.")
    if isinstance(error, (openai.AuthenticationError, openai.PermissionDeniedError)):
        return GroundingError("Authentication error with Azure OpenAI. Please check your credentials.")
    if isinstance(error, openai.NotFoundError):
        return GroundingError("Azure OpenAI resource not found. Verify endpoint and deployment.")
    if isinstance(error, openai.BadRequestError) and "model" in str(error).lower():
        return GroundingError(
            "Model compatibility error: Please check AZURE_OPENAI_DEPLOYMENT_MODEL_NAME2 environment variable."
        )
    return GroundingError(f"Failed to convert natural language to SQL: {error}")


class GroundingService:
    """
    Azure OpenAI chat client used for NL->SQL and result summaries.

    The client is created lazily so a missing key only degrades retrieval to
    the keyword fallback instead of failing startup.
    """

    def __init__(self, config: Optional[Config] = None, client: Optional[Any] = None):
        self.config = config or get_config()
        self.model = self.config.azure_openai_chat_deployment
        self._client = client

    def _get_client(self) -> Any:
        if self._client is None:
            if not (self.config.azure_openai_key and self.config.azure_openai_endpoint):
                raise GroundingError("Missing Azure OpenAI configuration. Check environment variables.")
            self._client = AsyncAzureOpenAI(
                api_key=self.config.azure_openai_key,
                azure_endpoint=self.config.azure_openai_endpoint,
                api_version=self.config.azure_openai_api_version,
            )
        return self._client

    async def translate(self, question: str, recent_turns: Sequence[ConversationTurn] = ()) -> str:
        """Translate a question into a cleaned SQL Server statement."""
        client = self._get_client()
        system_prompt = SQL_SYSTEM_PROMPT.format(
            schema=SCHEMA_CONTEXT,
            context=format_recent_turns(recent_turns),
        )

        try:
            response = await client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": question},
                ],
                temperature=0,
                max_tokens=800,
                top_p=0.95,
                frequency_penalty=0,
                presence_penalty=0,
            )
        except openai.OpenAIError as e:
            logger.error("NL to SQL conversion failed", error=str(e))
            raise _translation_error(e) from e

        content = ""
        if response.choices:
            content = (response.choices[0].message.content or "").strip()

        sql_query = fix_sql_syntax(clean_sql_query(content))
        if not sql_query:
            raise GroundingError("Model returned an empty SQL statement")

        logger.info("NL2SQL", question=question, sql=sql_query)
        return sql_query

    async def summarize(self, question: str, query_type: str, result: QueryResult) -> str:
        """Summarize a query result; degrades to a fixed phrase instead of raising."""
        sample_rows = max(1, self.config.summary_sample_rows)
        formatted = format_results_for_prompt(query_type, result, sample_rows)
        record_count = len(result) if result.returns_rows else 0

        try:
            client = self._get_client()
            response = await client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": SUMMARY_SYSTEM_PROMPT},
                    {
                        "role": "user",
                        "content": (
                            f'Original query: "{question}"\n'
                            f"Query type: {query_type}\n"
                            f"Number of records: {record_count}\n"
                            f"Results: {formatted}\n\n"
                            "Please provide a natural language summary of these database results."
                        ),
                    },
                ],
                temperature=0.7,
                max_tokens=500,
            )
        except openai.RateLimitError as e:
            logger.warning("Summary rate limited", error=str(e))
            return degraded_summary(query_type, result, rate_limited=True)
        except (openai.OpenAIError, GroundingError) as e:
            logger.error("Error formatting results as natural language", error=str(e))
            return degraded_summary(query_type, result)

        summary = ""
        if response.choices:
            summary = (response.choices[0].message.content or "").strip()
        return summary or degraded_summary(query_type, result)
