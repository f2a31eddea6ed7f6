"""Context assembly for the health chat model.

Builds the natural-language summary of retrieved chunks and the guarded
system prompt that carries them to the chat model.
"""

import logging
from datetime import datetime

from healthrag.models import HealthDataChunk, HealthDataContext, SearchOptions, parse_timestamp
from healthrag.rag.parser import format_health_type

logger = logging.getLogger(__name__)

MAX_CONTEXT_LENGTH = 8000
NO_DATA_SUMMARY = "No relevant health data found for this query."
TRUNCATION_MARK = " [truncated]"
# smallest partial entry worth adding after full ones
MIN_TRUNCATED_CONTENT = 200

SYSTEM_PROMPT_TEMPLATE = """You are a knowledgeable and supportive health assistant. You have access to the user's personal health data and should provide insights, explanations, and guidance based on this information.

IMPORTANT GUIDELINES:
- Always base your responses on the provided health data context when available
- Provide specific, data-driven insights when possible
- Be supportive and encouraging while being factual
- If the data is insufficient to answer a question, acknowledge this limitation
- Focus on trends, patterns, and actionable insights
- Always recommend consulting healthcare professionals for medical decisions
- Maintain a conversational and helpful tone

USER'S HEALTH DATA CONTEXT:
{summary}

RELEVANT HEALTH DATA DETAILS:
{details}

Total relevant data points found: {total}

Now, please respond to the user's question: "{query}"

Remember to:
- Reference specific data points from the context when relevant
- Explain trends or patterns you observe
- Provide actionable insights where appropriate
- Maintain a supportive and professional tone"""


def _metric_types(chunk: HealthDataChunk) -> list[str]:
    types = chunk.metadata.get("metric_types")
    if types is None and chunk.metadata.get("metricType"):
        types = [chunk.metadata["metricType"]]
    return [format_health_type(t) for t in types or []]


def _span(chunk: HealthDataChunk) -> tuple[str, str]:
    start = chunk.metadata.get("start_date") or chunk.timestamp
    end = chunk.metadata.get("end_date") or start
    return start, end


def _cut_content(content: str, room: int) -> str:
    if len(content) <= room:
        return content
    piece = content[:room]
    # keep whole record lines when at least one fits
    if "\n" in piece:
        piece = piece[: piece.rfind("\n")]
    return piece.rstrip()


def _sort_key(value: str) -> datetime | None:
    try:
        return parse_timestamp(value)
    except ValueError:
        return None


class ContextAssembler:
    """Turns ranked chunks into a context summary and system prompt."""

    def __init__(self, max_context_length: int = MAX_CONTEXT_LENGTH):
        self.max_context_length = max_context_length

    def summarize(self, chunks: list[HealthDataChunk], query: str) -> str:
        """Short description of what was retrieved for the query."""
        if not chunks:
            return NO_DATA_SUMMARY

        data_types: list[str] = []
        earliest: tuple[datetime, str] | None = None
        latest: tuple[datetime, str] | None = None
        for chunk in chunks:
            for t in _metric_types(chunk):
                if t not in data_types:
                    data_types.append(t)
            start, end = _span(chunk)
            start_key, end_key = _sort_key(start), _sort_key(end)
            if start_key is not None and (earliest is None or start_key < earliest[0]):
                earliest = (start_key, start)
            if end_key is not None and (latest is None or end_key > latest[0]):
                latest = (end_key, end)

        avg_similarity = sum(c.similarity for c in chunks) / len(chunks)
        time_range = (
            f"{earliest[1]} to {latest[1]}" if earliest and latest else "various dates"
        )
        return (
            f"Found {len(chunks)} relevant health data entries with average similarity of {avg_similarity * 100:.1f}%.\n"
            f"Data includes: {', '.join(data_types) or 'various health metrics'}.\n"
            f"Time range: {time_range}.\n"
            f'This data is highly relevant to the query: "{query}"'
        )

    def format_details(self, chunks: list[HealthDataChunk]) -> tuple[str, int]:
        """Numbered chunk listing, cut greedily at the context budget.

        The entry that crosses the budget is cut down to the remaining
        room (at whole record lines where possible) instead of dropped;
        the top-ranked entry is always listed.

        Returns:
            Tuple of (listing, number of chunks left out entirely).
        """
        lines: list[str] = []
        used = 0
        for index, chunk in enumerate(chunks, start=1):
            prefix = f"{index}. [Similarity: {chunk.similarity * 100:.1f}%] "
            separator = 1 if lines else 0
            line = prefix + chunk.content
            if used + separator + len(line) <= self.max_context_length:
                lines.append(line)
                used += separator + len(line)
                continue

            room = self.max_context_length - used - separator - len(prefix) - len(TRUNCATION_MARK)
            if room >= MIN_TRUNCATED_CONTENT or not lines:
                lines.append(prefix + _cut_content(chunk.content, max(room, 0)) + TRUNCATION_MARK)
                logger.info(f"Cut chunk {chunk.id} to fit the context budget")
            break

        omitted = len(chunks) - len(lines)
        if omitted:
            logger.info(
                f"Context budget of {self.max_context_length} characters reached; "
                f"omitted {omitted} of {len(chunks)} chunks"
            )
            lines.append(f"({omitted} entries omitted to fit the context limit)")
        return "\n".join(lines), omitted

    def build_context(
        self, query: str, chunks: list[HealthDataChunk], options: SearchOptions
    ) -> HealthDataContext:
        return HealthDataContext(
            query=query,
            relevant_data=chunks,
            context_summary=self.summarize(chunks, query),
            total_matches=len(chunks),
            search_options=options,
        )

    def build_prompt(self, query: str, context: HealthDataContext) -> str:
        details, _ = self.format_details(context.relevant_data)
        return SYSTEM_PROMPT_TEMPLATE.format(
            summary=context.context_summary,
            details=details,
            total=context.total_matches,
            query=query,
        )
