"""Web search using Tavily."""

from typing import Any

import structlog
from langchain_core.tools import ToolException
from langchain_tavily import TavilySearch

from allchat.core.exceptions import SearchError, UpstreamCredentialError
from allchat.schemas.chat_schema import SearchResult

logger = structlog.get_logger()

_CREDENTIAL_MARKERS = ("401", "403", "unauthorized", "invalid api key", "forbidden")


async def search_web(query: str, api_key: str, max_results: int = 5) -> list[SearchResult]:
    """Search the web and return an ordered list of results.

    Args:
        query: The user's question, used verbatim as the search query.
        api_key: Tavily key (user-supplied or server default).
        max_results: Upper bound on returned results.

    Returns:
        Results in provider ranking order. Empty when nothing matched.
    """
    if not api_key:
        raise UpstreamCredentialError(provider="Tavily")

    search = TavilySearch(max_results=max_results, tavily_api_key=api_key)
    try:
        raw: Any = await search.ainvoke({"query": query})
    except ToolException:
        return []

    if isinstance(raw, dict) and "error" in raw:
        reason = str(raw["error"])
        logger.warning("Web search failed", reason=reason[:200])
        if any(marker in reason.lower() for marker in _CREDENTIAL_MARKERS):
            raise UpstreamCredentialError(
                provider="Tavily",
                message="The provided Tavily API key is invalid or has insufficient credits.",
            )
        raise SearchError()

    items = raw.get("results", []) if isinstance(raw, dict) else []
    return [
        SearchResult(
            title=item.get("title") or "",
            url=item["url"],
            content=item.get("content") or "",
        )
        for item in items[:max_results]
        if item.get("url")
    ]


def augment_prompt(query: str, results: list[SearchResult]) -> str:
    """Rewrite a user turn so the model answers from the search results."""
    context = "\n\n".join(f"URL: {r.url}, Content: {r.content}" for r in results)
    return (
        f"Based on these search results:\n---\n{context}\n---\n\n"
        f'Answer the user\'s query: "{query}"'
    )
