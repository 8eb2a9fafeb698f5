"""新闻服务测试：RSS 解析、拉取失败降级（保留旧数据）、缓存复用"""

import asyncio

import httpx

from conftest import FakeClock, FakeRedis
from invest_service.layers.cache import InvestingCache
from invest_service.services.news_service import NewsService, parse_rss

RSS = """<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0"><channel>
  <item>
    <title>Stocks rally &amp; bonds slip</title>
    <link>https://example.com/a</link>
    <description><![CDATA[<p>Markets <b>rose</b> today.</p>]]></description>
    <pubDate>Fri, 10 May 2024 12:00:00 GMT</pubDate>
  </item>
  <item>
    <title>Long story</title>
    <link>https://example.com/b</link>
    <description>{long}</description>
  </item>
  <item>
    <title></title>
    <link>https://example.com/no-title</link>
  </item>
</channel></rss>
""".replace("{long}", "x" * 400)


class TestParseRss:
    def test_items_cleaned(self):
        items = parse_rss(RSS, "latest")
        assert len(items) == 2
        first = items[0]
        assert first["title"] == "Stocks rally & bonds slip"
        assert first["description"] == "Markets rose today."
        assert first["pub_date"] == "Fri, 10 May 2024 12:00:00 GMT"
        assert first["category"] == "latest"

    def test_long_description_truncated(self):
        description = parse_rss(RSS, "latest")[1]["description"]
        assert len(description) == 150
        assert description.endswith("...")

    def test_invalid_xml(self):
        assert parse_rss("<rss><channel>", "latest") == []


class TestNewsService:
    def _service(self, handler, redis=None):
        http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return NewsService(InvestingCache(redis if redis is not None else FakeRedis()), http=http)

    def test_category_news_cached(self):
        calls = []

        def handler(request):
            calls.append(str(request.url))
            return httpx.Response(200, text=RSS)

        async def run():
            svc = self._service(handler)
            try:
                first = await svc.get_news_by_category("latest")
                second = await svc.get_news_by_category("latest")
            finally:
                await svc.aclose()
            return first, second

        first, second = asyncio.run(run())
        assert len(first) == 2
        assert first == second
        assert len(calls) == 1

    def test_unknown_category_is_empty(self):
        async def run():
            svc = self._service(lambda request: httpx.Response(200, text=RSS))
            try:
                return await svc.get_news_by_category("sports")
            finally:
                await svc.aclose()

        assert asyncio.run(run()) == []

    def test_ticker_news_passes_symbol(self):
        seen = {}

        def handler(request):
            seen["s"] = request.url.params.get("s")
            return httpx.Response(200, text=RSS)

        async def run():
            svc = self._service(handler)
            try:
                return await svc.get_news_for_ticker("aapl")
            finally:
                await svc.aclose()

        items = asyncio.run(run())
        assert seen["s"] == "AAPL"
        assert items[0]["category"] == "stock"

    def test_upstream_failure_returns_empty(self):
        async def run():
            svc = self._service(lambda request: httpx.Response(503))
            try:
                return await svc.get_news_by_category("oil")
            finally:
                await svc.aclose()

        assert asyncio.run(run()) == []

    def test_failure_keeps_previous_feed(self):
        state = {"up": True}

        def handler(request):
            if state["up"]:
                return httpx.Response(200, text=RSS)
            return httpx.Response(503)

        async def run():
            clock = FakeClock()
            http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
            svc = NewsService(InvestingCache(FakeRedis(), clock=clock), http=http)
            try:
                fresh = await svc.get_news_by_category("latest")
                state["up"] = False
                clock.advance(49 * 60 * 60)
                fallback = await svc.get_news_by_category("latest")
                again = await svc.get_news_by_category("latest")
            finally:
                await svc.aclose()
            return fresh, fallback, again

        fresh, fallback, again = asyncio.run(run())
        assert len(fresh) == 2
        assert fallback == fresh
        assert again == fresh
