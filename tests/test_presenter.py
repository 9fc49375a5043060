"""Tests for FeedPresenter decisions and feed stats."""

import pytest
from conftest import make_show

from narrowdown.models.tv import ContentItem, FeedFilterState, PreferenceStatus
from narrowdown.services.tv.context import TvSessionContext
from narrowdown.services.tv.discover_state import DiscoverHistory
from narrowdown.services.tv.preferences import PreferenceStore
from narrowdown.services.tv.presenter import FeedPresenter, build_stats, unclassified_shows


def item(show_id: int, **kwargs) -> ContentItem:
    return ContentItem.from_raw(make_show(show_id, **kwargs))


@pytest.fixture
def ctx(document_store, direct_sources, clock):
    return TvSessionContext(
        preferences=PreferenceStore(document_store),
        sources=direct_sources,
        history=DiscoverHistory(),
        clock=clock,
    )


class TestEmptyPool:
    def test_not_loaded_asks_for_more(self, ctx) -> None:
        view = FeedPresenter.render(ctx)
        assert (view.kind, view.reason) == ("loading", "notLoaded")
        assert view.should_request_more

    def test_in_flight_waits(self, ctx) -> None:
        view = FeedPresenter.render(ctx, in_flight=True)
        assert (view.kind, view.reason) == ("loading", "loading")
        assert not view.should_request_more

    def test_exhausted_mentions_filters_when_active(self, ctx) -> None:
        ctx.feed_exhausted = True
        assert FeedPresenter.render(ctx).message == "TMDB did not return any TV shows. Try again later."

        ctx.filters = FeedFilterState(minRating="9")
        view = FeedPresenter.render(ctx)
        assert (view.kind, view.reason) == ("empty", "exhausted")
        assert view.message == "TMDB did not return TV shows that match your filters."


class TestHiddenShows:
    async def test_everything_suppressed(self, ctx) -> None:
        ctx.candidates = [item(1)]
        await ctx.preferences.set(item(1), PreferenceStatus.WATCHED)

        view = FeedPresenter.render(ctx)

        assert view.reason == "suppressed"
        assert view.tone == "warning"
        assert view.should_request_more

    def test_filters_hide_the_pool(self, ctx) -> None:
        ctx.candidates = [item(1, average=6.0), item(2, average=6.5)]
        ctx.filters = FeedFilterState(minRating="8")

        view = FeedPresenter.render(ctx)

        assert view.reason == "filtered"
        assert view.message == "Filters are hiding 2 show(s); requesting more options..."
        assert view.should_request_more

    def test_filters_hide_an_exhausted_pool(self, ctx) -> None:
        ctx.candidates = [item(1, average=6.0)]
        ctx.filters = FeedFilterState(minRating="8")
        ctx.feed_exhausted = True

        view = FeedPresenter.render(ctx)

        assert (view.kind, view.reason) == ("empty", "filtered")
        assert view.message == "Filters are hiding every TV show that is currently available."
        assert not view.should_request_more

    def test_no_genres_selected_in_flight(self, ctx) -> None:
        ctx.candidates = [item(1)]
        ctx.filters = FeedFilterState(selectedGenres="none")

        view = FeedPresenter.render(ctx, in_flight=True)

        assert (view.kind, view.reason) == ("loading", "filtered")


class TestReady:
    async def test_lists_visible_shows_in_order(self, ctx) -> None:
        ctx.candidates = [item(3), item(1), item(2)]
        await ctx.preferences.set(item(1), PreferenceStatus.NOT_INTERESTED)

        view = FeedPresenter.render(ctx)

        assert view.kind == "list"
        assert [i.id for i in view.items] == [3, 2]
        assert view.message.startswith("Showing 2 show(s) (updated ")
        assert view.to_dict()["shouldRequestMore"] is False


class TestStats:
    def test_catalog_total_wins_when_larger(self, ctx) -> None:
        ctx.candidates = [item(1, average=9.2), item(2, average=5.0), item(3, average=None)]
        ctx.catalog_metadata = {"curatedCount": "40"}

        stats = build_stats(ctx)

        assert stats["totals"][0]["value"] == 40
        ratings = {bucket["label"]: bucket["value"] for bucket in stats["ratings"]}
        assert ratings == {"9-10": 1, "8-8.9": 0, "7-7.9": 0, "6-6.9": 0, "< 6": 1}

    async def test_restored_shows_are_counted_once(self, ctx) -> None:
        restored = item(7)
        ctx.candidates = [restored, item(8)]
        ctx.restored = {"7": restored}

        assert [show.id for show in unclassified_shows(ctx)] == [7, 8]
        assert build_stats(ctx)["totals"][0]["value"] == 2
