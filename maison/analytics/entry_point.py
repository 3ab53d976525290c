from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional
from urllib.parse import parse_qs, urlparse

SEARCH_ENGINES = ("google", "bing", "yahoo", "duckduckgo", "yandex", "baidu")
SOCIAL_NETWORKS = ("facebook", "twitter", "instagram", "linkedin", "pinterest", "reddit", "tiktok", "youtube")

ENTRY_POINTS = ("direct", "search", "social", "referral", "email", "other")


@dataclass(frozen=True)
class EntryPoint:
    entry_point: str = "direct"
    search_query: Optional[str] = None
    campaign_source: Optional[str] = None
    campaign_medium: Optional[str] = None
    campaign_name: Optional[str] = None

    def as_payload(self) -> Dict[str, Any]:
        """camelCase keys, empty values dropped (tracking payload shape)."""
        names = {
            "entry_point": "entryPoint",
            "search_query": "searchQuery",
            "campaign_source": "campaignSource",
            "campaign_medium": "campaignMedium",
            "campaign_name": "campaignName",
        }
        return {names[k]: v for k, v in asdict(self).items() if v}


def _first(params: Dict[str, list], *keys: str) -> Optional[str]:
    for key in keys:
        values = params.get(key) or []
        if values and values[0]:
            return values[0]
    return None


def classify_entry_point(referrer: Optional[str], page_url: Optional[str] = None) -> EntryPoint:
    """
    Where did the visit come from.
    UTM parameters on the landing URL win over referrer inference.
    """
    if page_url:
        try:
            utm = parse_qs(urlparse(page_url).query)
        except ValueError:
            utm = {}
        source = _first(utm, "utm_source")
        if source:
            return EntryPoint(
                entry_point="other",
                campaign_source=source,
                campaign_medium=_first(utm, "utm_medium"),
                campaign_name=_first(utm, "utm_campaign"),
                search_query=_first(utm, "utm_term"),
            )

    referrer = (referrer or "").strip()
    if not referrer or (page_url and referrer == page_url):
        return EntryPoint("direct")

    try:
        parsed = urlparse(referrer)
        hostname = (parsed.hostname or "").lower()
    except ValueError:
        return EntryPoint("other")

    if not parsed.scheme or not hostname:
        return EntryPoint("other")

    if any(se in hostname for se in SEARCH_ENGINES):
        query = _first(parse_qs(parsed.query), "q", "query", "text")
        return EntryPoint("search", search_query=query)

    if any(sn in hostname for sn in SOCIAL_NETWORKS):
        return EntryPoint("social")

    if "mail" in hostname or "email" in hostname:
        return EntryPoint("email")

    return EntryPoint("referral")
