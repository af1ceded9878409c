"""Keyword filter engine for subscriptions."""

from collections.abc import Iterable

from bs4 import BeautifulSoup

from .models import FeedItem


def normalize_filters(keywords: Iterable[str] | str | None) -> tuple[str, ...]:
    """Normalize keywords into an ordered tuple of unique lowercase strings.

    A single string is split on commas, so "Weather, storm" and
    ["weather", "STORM"] normalize to the same value.
    """
    if keywords is None:
        return ()
    if isinstance(keywords, str):
        keywords = keywords.split(",")

    normalized: list[str] = []
    for keyword in keywords:
        keyword = " ".join(keyword.split()).lower()
        if keyword and keyword not in normalized:
            normalized.append(keyword)
    return tuple(normalized)


def strip_markup(content: str | None) -> str:
    """Remove HTML tags from content and normalize whitespace.

    Args:
        content: Raw content that may contain HTML

    Returns:
        Clean text content without HTML tags
    """
    if not content:
        return ""

    if "<" not in content and ">" not in content:
        return " ".join(content.split())

    soup = BeautifulSoup(content, "html.parser")

    for element in soup(["script", "style"]):
        element.decompose()

    text = soup.get_text(separator=" ")
    text = text.replace("<", "").replace(">", "")

    return " ".join(text.split())


def matches(filters: Iterable[str], item: FeedItem) -> bool:
    """Decide whether an item passes a subscription's keyword filters.

    An empty filter set lets every item through. Otherwise the item matches
    when any keyword occurs, case-insensitively, in its title, its summary
    with markup stripped, or its link.
    """
    keywords = [keyword.lower() for keyword in filters if keyword]
    if not keywords:
        return True

    haystacks = [
        (item.title or "").lower(),
        strip_markup(item.summary).lower(),
        (item.link or "").lower(),
    ]
    return any(keyword in text for keyword in keywords for text in haystacks)
