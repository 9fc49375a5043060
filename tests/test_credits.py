"""Tests for CreditsEnricher: prefetched credits, the lookup cap and the proxy fallback chain."""

import httpx
import pytest
from conftest import FakeDirectTmdb, make_show

from narrowdown.models.tv import ContentItem
from narrowdown.services.tmdb.proxy import TmdbProxyClient
from narrowdown.services.tv.credits import CreditsEnricher
from narrowdown.services.tv.sources import DiscoverySources

PROXY_URL = "https://proxy.test/api/tmdbProxy"

CREDITS = {
    "cast": [{"name": "Bryan Cranston"}, {"name": "Aaron Paul"}],
    "crew": [{"job": "Director", "name": "Vince Gilligan"}, {"job": "Writer", "name": "Peter Gould"}],
}
DIRECT_CREDITS = {"cast": [{"name": "Direct Cast"}], "crew": [{"job": "Director", "name": "Direct Director"}]}


def show(show_id: int, **extra) -> ContentItem:
    return ContentItem.from_raw({**make_show(show_id), **extra})


def by_endpoint(**routes: tuple[int, dict]):
    """MockTransport handler answering each proxy endpoint with a fixed (status, body)."""

    def handler(request: httpx.Request) -> httpx.Response:
        status, body = routes[request.url.params["endpoint"]]
        return httpx.Response(status, json=body)

    return handler


@pytest.fixture
async def proxy_sources():
    clients: list[TmdbProxyClient] = []

    def build(handler, direct_credits: dict | None = None) -> tuple[DiscoverySources, list[httpx.Request]]:
        requests: list[httpx.Request] = []

        def recording(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return handler(request)

        proxy = TmdbProxyClient(PROXY_URL, transport=httpx.MockTransport(recording))
        clients.append(proxy)
        direct = FakeDirectTmdb(credits=direct_credits)
        return DiscoverySources(proxy=proxy, direct=direct), requests

    yield build
    for client in clients:
        await client.close()


class TestDirectLookups:
    async def test_prefetched_credits_need_no_lookup(self) -> None:
        direct = FakeDirectTmdb()
        enricher = CreditsEnricher(DiscoverySources(direct=direct))
        shows = [show(1), show(2)]

        await enricher.enrich(shows, using_proxy=False, prefetched={"1": CREDITS, 2: CREDITS})

        assert direct.credit_calls == []
        assert shows[0].top_cast == ["Bryan Cranston", "Aaron Paul"]
        assert shows[1].directors == ["Vince Gilligan"]

    async def test_lookups_are_capped(self) -> None:
        direct = FakeDirectTmdb(credits={i: DIRECT_CREDITS for i in range(1, 26)})
        enricher = CreditsEnricher(DiscoverySources(direct=direct))
        shows = [show(i) for i in range(1, 26)]

        await enricher.enrich(shows, using_proxy=False)

        assert sorted(direct.credit_calls) == list(range(1, 21))
        assert shows[19].has_credits
        assert not shows[20].has_credits

    async def test_empty_lookup_keeps_existing_names(self) -> None:
        direct = FakeDirectTmdb()
        enricher = CreditsEnricher(DiscoverySources(direct=direct))
        partial = show(1, topCast=["Known Actor"])

        await enricher.enrich([partial], using_proxy=False)

        assert direct.credit_calls == [1]
        assert partial.top_cast == ["Known Actor"]
        assert partial.directors == []

    async def test_no_sources_is_a_no_op(self) -> None:
        item = show(1)
        await CreditsEnricher(DiscoverySources()).enrich([item], using_proxy=True)
        assert not item.has_credits


class TestProxyFallbackChain:
    async def test_proxy_credits_endpoint(self, proxy_sources) -> None:
        sources, requests = proxy_sources(by_endpoint(tv_credits=(200, CREDITS)))
        item = show(7)

        await CreditsEnricher(sources).enrich([item], using_proxy=True)

        assert item.directors == ["Vince Gilligan"]
        assert requests[0].url.params["tv_id"] == "7"
        assert sources.direct.credit_calls == []

    async def test_unsupported_credits_endpoint_falls_back_to_details(self, proxy_sources) -> None:
        sources, requests = proxy_sources(
            by_endpoint(
                tv_credits=(400, {"error": "unsupported_endpoint"}),
                tv_details=(200, {"id": 7, "credits": CREDITS}),
            )
        )
        enricher = CreditsEnricher(sources)
        first, second = show(7), show(8)

        await enricher.enrich([first], using_proxy=True)
        requests.clear()
        await enricher.enrich([second], using_proxy=True)

        assert first.has_credits
        assert second.has_credits
        assert [r.url.params["endpoint"] for r in requests] == ["tv_details"]
        assert requests[0].url.params["append_to_response"] == "credits"
        assert not sources.breaker.disabled
        assert not sources.breaker.is_supported("tv_credits")
        assert sources.direct.credit_calls == []

    async def test_each_id_parameter_is_tried_before_giving_up(self, proxy_sources) -> None:
        sources, requests = proxy_sources(
            by_endpoint(
                tv_credits=(400, {"error": "invalid_endpoint_params"}),
                tv_details=(200, {"credits": CREDITS}),
            )
        )
        item = show(7)

        await CreditsEnricher(sources).enrich([item], using_proxy=True)

        credit_requests = [r for r in requests if r.url.params["endpoint"] == "tv_credits"]
        assert [sorted(set(r.url.params) - {"endpoint"}) for r in credit_requests] == [["tv_id"], ["id"], ["tvId"]]
        assert item.has_credits
        assert not sources.breaker.is_supported("tv_credits")

    async def test_both_proxy_paths_unsupported_use_the_direct_api(self, proxy_sources) -> None:
        sources, _ = proxy_sources(
            by_endpoint(
                tv_credits=(400, {"error": "unsupported_endpoint"}),
                tv_details=(400, {"error": "unsupported_endpoint"}),
            ),
            direct_credits={7: DIRECT_CREDITS},
        )
        item = show(7)

        await CreditsEnricher(sources).enrich([item], using_proxy=True)

        assert item.top_cast == ["Direct Cast"]
        assert sources.direct.credit_calls == [7]
        assert not sources.breaker.disabled

    @pytest.mark.parametrize("status", [401, 500])
    async def test_proxy_failure_disables_the_proxy(self, proxy_sources, status) -> None:
        sources, requests = proxy_sources(
            by_endpoint(tv_credits=(status, {"error": "boom"})), direct_credits={7: DIRECT_CREDITS}
        )
        item = show(7)

        await CreditsEnricher(sources).enrich([item], using_proxy=True)

        assert sources.breaker.disabled
        assert not sources.proxy_available
        assert sources.direct.credit_calls == [7]
        assert item.directors == ["Direct Director"]
        assert len(requests) == 1

    async def test_network_error_disables_the_proxy(self, proxy_sources) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        sources, _ = proxy_sources(handler, direct_credits={7: DIRECT_CREDITS})
        item = show(7)

        await CreditsEnricher(sources).enrich([item], using_proxy=True)

        assert sources.breaker.disabled
        assert sources.breaker.reason.startswith("network error")
        assert item.has_credits
