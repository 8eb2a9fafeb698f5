"""
财经新闻服务
拉取 Yahoo Finance RSS，经投资缓存复用（4 小时）
"""

import html
import logging
import re
import xml.etree.ElementTree as ET
from typing import Any, Dict, List, Optional

import httpx
from fastapi import Request

from invest_service.errors import UpstreamUnavailable
from invest_service.layers.cache import CACHE_TTL, CacheKeys, FetchFn, InvestingCache

logger = logging.getLogger(__name__)

FEEDS = {
    "latest": "https://finance.yahoo.com/news/rssindex",
    "ai": "https://finance.yahoo.com/rss/technology",
    "oil": "https://finance.yahoo.com/rss/energy",
    "medical": "https://finance.yahoo.com/rss/healthcare",
}
_TICKER_FEED = "https://finance.yahoo.com/rss/headline"
_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0 Safari/537.36"
)
_MAX_ITEMS = 20
_MAX_DESCRIPTION = 150
_TAG_RE = re.compile(r"<[^>]*>")


def parse_rss(xml_text: str, category: str) -> List[Dict[str, Any]]:
    """解析 RSS，返回 {title, description, link, pub_date, category} 列表"""
    try:
        root = ET.fromstring(xml_text)
    except ET.ParseError as exc:
        logger.warning(f"RSS 解析失败（{category}）: {exc}")
        return []

    items = []
    for node in root.iter("item"):
        title = (node.findtext("title") or "").strip()
        link = (node.findtext("link") or "").strip()
        if not title or not link:
            continue
        description = _TAG_RE.sub("", node.findtext("description") or "").strip()
        if len(description) > _MAX_DESCRIPTION:
            description = description[: _MAX_DESCRIPTION - 3] + "..."
        items.append({
            "title": html.unescape(title),
            "description": html.unescape(description),
            "link": link,
            "pub_date": (node.findtext("pubDate") or "").strip(),
            "category": category,
        })
    return items


class NewsService:
    """新闻订阅服务"""

    def __init__(self, cache: InvestingCache, http: Optional[httpx.AsyncClient] = None):
        self._cache = cache
        self._http = http or httpx.AsyncClient(headers={"User-Agent": _USER_AGENT})

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _fetch_feed(self, url: str, category: str, params: Dict[str, str] = None) -> List[Dict[str, Any]]:
        try:
            response = await self._http.get(url, params=params)
        except httpx.HTTPError as exc:
            raise UpstreamUnavailable(f"rss/{category}", str(exc)) from exc
        if not response.is_success:
            raise UpstreamUnavailable(f"rss/{category}", response.reason_phrase, response.status_code)
        return parse_rss(response.text, category)[:_MAX_ITEMS]

    async def _cached_feed(self, key: str, fetch_fn: FetchFn, category: str) -> List[Dict[str, Any]]:
        """拉取失败时缓存层返回旧数据；没有旧数据则返回空列表，失败结果不写入缓存"""
        try:
            return await self._cache.get_or_fetch(key, fetch_fn, CACHE_TTL["prices_recent"])
        except UpstreamUnavailable as exc:
            logger.error(f"新闻拉取失败（{category}）: {exc}")
            return []

    async def get_news_by_category(self, category: str) -> List[Dict[str, Any]]:
        url = FEEDS.get(category)
        if url is None:
            return []
        return await self._cached_feed(
            CacheKeys.news(category),
            lambda: self._fetch_feed(url, category),
            category,
        )

    async def get_news_for_ticker(self, ticker: str) -> List[Dict[str, Any]]:
        ticker = ticker.upper()
        return await self._cached_feed(
            CacheKeys.news_ticker(ticker),
            lambda: self._fetch_feed(_TICKER_FEED, "stock", params={"s": ticker}),
            ticker,
        )


def get_news_service(request: Request) -> NewsService:
    """FastAPI 依赖：获取新闻服务"""
    return request.app.state.news_service
