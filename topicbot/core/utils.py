"""
Text and URL helpers shared by the repository layer and the generators.
"""

import hashlib
import re
import unicodedata
from collections import Counter
from typing import Iterable, List
from urllib.parse import parse_qs, urlencode, urlparse, urlunparse

from topicbot.core.logging import get_logger

logger = get_logger(__name__)

TRACKING_PARAMS = {
    'utm_source', 'utm_medium', 'utm_campaign', 'utm_term', 'utm_content',
    'fbclid', 'gclid', 'msclkid', 'twclid', '_ga', '_gl',
    'ref', 'referrer', 'cmpid', 'ncid', 'mc_cid', 'mc_eid',
}

ENGLISH_STOPWORDS = {
    'about', 'after', 'before', 'their', 'there', 'these', 'those', 'would',
    'could', 'should', 'which', 'where', 'while', 'with', 'from', 'into',
    'over', 'that', 'this', 'what', 'when', 'will', 'have', 'says', 'said',
}


def normalize_url(url: str) -> str:
    """
    Normalize URL by removing tracking parameters, fragments, and sorting query params.

    Two URLs that differ only in tracking noise normalize to the same string,
    which makes the normalized form usable as the news item dedup key.
    """
    if not url:
        return ""

    try:
        parsed = urlparse(url.strip())
        parsed = parsed._replace(fragment='', netloc=parsed.netloc.lower())

        if parsed.query:
            params = parse_qs(parsed.query, keep_blank_values=False)
            filtered = {
                key: value for key, value in params.items()
                if key.lower() not in TRACKING_PARAMS
            }
            query = urlencode(sorted(filtered.items()), doseq=True) if filtered else ''
            parsed = parsed._replace(query=query)

        return urlunparse(parsed)

    except ValueError as e:
        logger.warning(f"URL normalization failed for '{url}': {e}")
        return url.strip()


def sha1_url(url: str) -> str:
    """SHA1 of the normalized URL, used as the unique key of a news item."""
    if not url:
        return ""
    return hashlib.sha1(normalize_url(url).encode('utf-8')).hexdigest()


def clean_text(text: str) -> str:
    """Normalize unicode and collapse whitespace."""
    if not text:
        return ""
    text = unicodedata.normalize('NFKC', text)
    return re.sub(r'\s+', ' ', text).strip()


def truncate(text: str, max_length: int, suffix: str = "...") -> str:
    """Cut ``text`` to ``max_length`` characters, suffix included."""
    if not text or len(text) <= max_length:
        return text or ""
    if len(suffix) >= max_length:
        return text[:max_length]
    return text[:max_length - len(suffix)].rstrip() + suffix


def frequent_words(texts: Iterable[str], limit: int = 5, min_length: int = 5) -> List[str]:
    """
    Most frequent significant words across ``texts``.

    Ties keep first-seen order so the result is stable for a fixed input.
    """
    words = []
    for text in texts:
        for word in re.findall(r"[a-z0-9][a-z0-9'-]*", (text or "").lower()):
            if len(word) >= min_length and word not in ENGLISH_STOPWORDS:
                words.append(word)
    return [word for word, _ in Counter(words).most_common(limit)]
