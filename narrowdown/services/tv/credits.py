import asyncio
from collections.abc import Sequence

from loguru import logger

from narrowdown.core.constants import MAX_CREDIT_REQUESTS
from narrowdown.core.errors import ConfigurationError, ProxyError, UpstreamError
from narrowdown.models.tv import ContentItem
from narrowdown.services.tv.sources import DiscoverySources


class CreditsEnricher:
    """
    Backfills top cast and directors.

    Lookup order per show: proxy `tv_credits`, proxy `tv_details` with appended credits
    (when the proxy has no usable credits endpoint), then the direct API. A proxy failure
    that is not a parameter problem disables the proxy and goes straight to the direct API.
    """

    def __init__(self, sources: DiscoverySources, max_requests: int = MAX_CREDIT_REQUESTS):
        self.sources = sources
        self.max_requests = max_requests
        self._logged_credits_fallback = False

    async def fetch_credits(self, tv_id: int, using_proxy: bool) -> dict | None:
        sources = self.sources
        proxy_available = using_proxy and sources.proxy_available
        needs_details_fallback = (
            proxy_available and not sources.proxy_supports("tv_credits") and sources.proxy_supports("tv_details")
        )

        if proxy_available and sources.proxy_supports("tv_credits"):
            try:
                credits = await sources.credits_from_proxy(tv_id)
                if credits:
                    return credits
            except ProxyError as e:
                if not e.is_parameter_error:
                    return await self._fall_back_to_direct(tv_id, "credits", e)
                needs_details_fallback = sources.proxy_supports("tv_details")
                if not self._logged_credits_fallback:
                    logger.info(f"TMDB proxy credits endpoint unavailable ({e.summary()}), trying tv_details")
                    self._logged_credits_fallback = True
            except (UpstreamError, ConfigurationError) as e:
                return await self._fall_back_to_direct(tv_id, "credits", e)

        if needs_details_fallback and sources.proxy_supports("tv_details"):
            try:
                credits = await sources.credits_via_details_from_proxy(tv_id)
                if credits:
                    return credits
            except ProxyError as e:
                if not e.is_parameter_error:
                    return await self._fall_back_to_direct(tv_id, "details", e)
            except (UpstreamError, ConfigurationError) as e:
                return await self._fall_back_to_direct(tv_id, "details", e)

        return await sources.credits_direct(tv_id)

    async def _fall_back_to_direct(self, tv_id: int, what: str, error: Exception) -> dict | None:
        summary = error.summary() if isinstance(error, ProxyError) else str(error)
        logger.warning(f"TMDB proxy {what} request failed ({summary}), attempting direct fallback")
        self.sources.breaker.disable(summary)
        return await self.sources.credits_direct(tv_id)

    async def enrich(
        self,
        items: Sequence[ContentItem],
        using_proxy: bool,
        prefetched: dict[str, dict] | None = None,
    ) -> None:
        """Apply prefetched credits, then look up the first `max_requests` shows still missing credits."""
        by_id = {item.key: item for item in items}
        for key, credits in (prefetched or {}).items():
            item = by_id.get(str(key))
            if item is not None:
                item.apply_credits(credits)

        targets = [item for item in list(items)[: self.max_requests] if not item.has_credits]
        if not targets:
            return
        if not (using_proxy and self.sources.proxy_available) and not self.sources.direct_available:
            return

        results = await asyncio.gather(
            *(self.fetch_credits(item.id, using_proxy) for item in targets), return_exceptions=True
        )
        for item, credits in zip(targets, results):
            if isinstance(credits, BaseException):
                logger.warning(f"Credits lookup failed for TV show {item.id}: {credits}")
                continue
            item.apply_credits(credits)
