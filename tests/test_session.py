"""Tests for TvSession and SessionRegistry."""

import pytest
from conftest import FakeDocumentStore, discover_page, make_show

from narrowdown.models.tv import PreferenceStatus
from narrowdown.services.critic_scores import CriticScoreError
from narrowdown.services.tv.session import SessionRegistry, TvSession, build_critic_lookup

DIRECT_KEY = "direct|||||all"


class FakeCriticScores:
    def __init__(self, payload=None, error: Exception | None = None):
        self.payload = payload
        self.error = error
        self.calls: list[dict] = []

    async def lookup(self, **kwargs):
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        return self.payload


@pytest.fixture
def critic():
    return FakeCriticScores(
        payload={"source": "omdb", "ratings": {"rottenTomatoes": 91, "metacritic": 80, "imdb": 8.1}, "title": "Show 1"}
    )


@pytest.fixture
async def session(direct_sources, document_store, critic, clock):
    direct_sources.direct.pages = {1: discover_page([make_show(i) for i in range(1, 13)], 3)}
    tv_session = TvSession(
        None, document_store, direct_sources, critic_scores=critic, clock=clock, cooldown=0, persist_delay=60
    )
    yield tv_session
    await tv_session.close()


def candidate_ids(session: TvSession) -> list[int]:
    return [item.id for item in session.context.candidates]


class TestFeed:
    async def test_first_view_loads_the_feed(self, session) -> None:
        view = await session.feed_view()

        assert view.kind == "list"
        assert view.reason == "ready"
        assert len(view.items) == 12
        assert view.message.startswith("Showing 12 show(s)")

    async def test_close_writes_the_discover_cursor(self, session, document_store) -> None:
        await session.feed_view()
        assert session.writer.dirty

        await session.close()

        assert document_store.discover_state["entries"][DIRECT_KEY]["nextPage"] == 2

    async def test_empty_upstream_exhausts_the_feed(self, direct_sources, document_store, clock) -> None:
        tv_session = TvSession(None, document_store, direct_sources, clock=clock, cooldown=0, persist_delay=60)
        try:
            view = await tv_session.feed_view()
        finally:
            await tv_session.close()

        assert view.kind == "empty"
        assert view.reason == "exhausted"
        assert view.message == "TMDB did not return any TV shows. Try again later."

    async def test_request_inside_cooldown_is_deferred(self, direct_sources, document_store) -> None:
        now = [1717200000.0]
        direct_sources.direct.pages = {1: discover_page([make_show(i) for i in range(1, 13)], 3)}
        tv_session = TvSession(
            None, document_store, direct_sources, clock=lambda: now[0], cooldown=5, persist_delay=60
        )
        try:
            await tv_session.feed_view()
            now[0] += 1
            decision = await tv_session.request_more()
        finally:
            await tv_session.close()

        assert decision.action == "deferred"
        assert tv_session.context.status.message == "Waiting 4s before requesting more TV shows..."
        assert tv_session.context.status.spinner

    async def test_stored_state_is_restored(self, direct_sources, clock) -> None:
        store = FakeDocumentStore(
            prefs={"5": {"status": "watched", "movie": make_show(5), "updatedAt": 1}},
            discover_state={"version": 1, "entries": {"direct||50|||all": {"nextPage": 3, "totalPages": 9}}},
            filters={"minVotes": "50"},
        )
        direct_sources.direct.pages = {3: discover_page([make_show(i) for i in range(1, 13)], 9)}
        tv_session = TvSession(None, store, direct_sources, clock=clock, cooldown=0, persist_delay=60)
        try:
            view = await tv_session.feed_view()
        finally:
            await tv_session.close()

        assert tv_session.context.filters.min_votes == "50"
        assert direct_sources.direct.discover_calls[0][0] == 3
        assert 5 not in [item.id for item in view.items]


class TestStatuses:
    async def test_classified_show_leaves_the_feed(self, session) -> None:
        await session.feed_view()

        change = await session.set_status(1, PreferenceStatus.WATCHED)

        assert change.prompt_rating
        assert 1 not in candidate_ids(session)
        assert 1 not in [item.id for item in session.render().items]

    async def test_unknown_show_needs_show_data(self, session) -> None:
        await session.feed_view()

        assert await session.set_status(999, PreferenceStatus.INTERESTED) is None

        change = await session.set_status(999, PreferenceStatus.INTERESTED, show={"name": "Elsewhere"})
        assert change.entry.movie.title == "Elsewhere"
        assert change.entry.movie.id == 999

    async def test_clearing_restores_the_show_once(self, session) -> None:
        await session.feed_view()
        await session.set_status(1, PreferenceStatus.INTERESTED, interest=4)

        assert await session.clear_status(1) is True
        assert await session.clear_status(1) is False

        assert candidate_ids(session).count(1) == 1
        assert "1" in session.context.restored

    async def test_low_rated_show_is_restored_next_to_a_strong_pool(self, session) -> None:
        await session.feed_view()
        weak = make_show(999, average=5.0, votes=5)
        await session.set_status(999, PreferenceStatus.WATCHED, show=weak)

        assert await session.clear_status(999) is True

        ids = candidate_ids(session)
        assert ids.count(999) == 1
        assert sorted(i for i in ids if i != 999) == list(range(1, 13))
        assert 999 in [item.id for item in session.render().items]

    async def test_clearing_not_interested_restores_nothing(self, session) -> None:
        await session.feed_view()
        await session.set_status(1, PreferenceStatus.NOT_INTERESTED)

        assert await session.clear_status(1) is True

        assert 1 not in candidate_ids(session)
        assert session.context.restored == {}

    async def test_reclassifying_a_restored_show(self, session) -> None:
        await session.feed_view()
        await session.set_status(2, PreferenceStatus.WATCHED)
        await session.clear_status(2)

        await session.set_status(2, PreferenceStatus.NOT_INTERESTED)

        assert "2" not in session.context.restored
        assert 2 not in candidate_ids(session)

    async def test_rating_and_interest_updates(self, session) -> None:
        await session.feed_view()
        await session.set_status(1, PreferenceStatus.WATCHED)
        await session.set_status(2, PreferenceStatus.INTERESTED)

        assert (await session.set_user_rating(1, 8.3)).user_rating == 8.5
        assert (await session.set_interest(2, 1)).interest == 1
        assert await session.set_interest(1, 4) is None

    async def test_stats_count_unclassified_shows(self, session) -> None:
        await session.feed_view()
        await session.set_status(1, PreferenceStatus.WATCHED)

        stats = session.stats()

        assert stats["totals"] == [{"label": "Unclassified Shows", "value": 11}]
        ratings = {bucket["label"]: bucket["value"] for bucket in stats["ratings"]}
        assert ratings["7-7.9"] == 11


class TestFilters:
    async def test_update_persists_and_reopens_the_feed(self, session, document_store) -> None:
        await session.feed_view()
        session.context.feed_exhausted = True

        filters = await session.update_filters({"minRating": "8"})

        assert filters.min_rating == "8"
        assert document_store.filters["minRating"] == "8"
        assert not session.context.feed_exhausted

    async def test_unchanged_filters_are_not_saved(self, session, document_store) -> None:
        await session.update_filters({"minRating": "7"})
        document_store.filters = None

        await session.update_filters({"minRating": "7.0"})

        assert document_store.filters is None

    async def test_genre_lists_are_normalised(self, session) -> None:
        await session.feed_view()

        every = await session.update_filters({"selectedGenres": [18, 35, 80]})
        assert every.selected_genres == "all"

        some = await session.update_filters({"selectedGenres": ["35"]})
        assert some.selected_genres == "35"

    async def test_change_supersedes_running_load(self, session) -> None:
        session.refill.in_progress = True
        before = session.context.attempts.current

        await session.update_filters({"minVotes": "20"})

        session.refill.in_progress = False
        assert session.context.attempts.current == before + 1


class TestCriticScores:
    async def test_scores_load_once_and_attach(self, session, critic) -> None:
        await session.feed_view()

        state = await session.request_critic_scores(1)
        again = await session.request_critic_scores(1)

        assert state.status == "loaded"
        assert state.data.rotten_tomatoes == 91
        assert again is state
        assert len(critic.calls) == 1
        assert critic.calls[0] == {"imdb_id": "", "title": "Show 1", "year": "2020", "type_": "series"}
        item = next(item for item in session.context.candidates if item.id == 1)
        assert item.critic_scores.metacritic == 80

    async def test_force_refreshes(self, session, critic) -> None:
        await session.feed_view()
        await session.request_critic_scores(1)
        await session.request_critic_scores(1, force=True)
        assert len(critic.calls) == 2

    async def test_lookup_errors_are_reported(self, session, critic) -> None:
        await session.feed_view()
        critic.error = CriticScoreError(404, "omdb_not_found", "Series not found!")

        state = await session.request_critic_scores(2)

        assert state.status == "error"
        assert state.error == "Series not found!"

    async def test_unknown_show(self, session) -> None:
        assert await session.request_critic_scores(12345) is None

    def test_lookup_needs_a_title_or_imdb_id(self) -> None:
        from narrowdown.models.tv import ContentItem

        assert build_critic_lookup(ContentItem(id=1)) is None
        lookup = build_critic_lookup(ContentItem(id=1, imdb_id="tt0903747", release_date="2008-01-20"))
        assert lookup["imdb_id"] == "tt0903747"
        assert lookup["year"] == "2008"


class TestSessionRegistry:
    async def test_sessions_are_reused_per_user(self, direct_sources, clock) -> None:
        created = []

        def factory(user_id):
            tv_session = TvSession(user_id, FakeDocumentStore(), direct_sources, clock=clock, persist_delay=60)
            created.append(tv_session)
            return tv_session

        registry = SessionRegistry(factory=factory, ttl=60)

        anonymous = await registry.get(None)
        assert await registry.get(None) is anonymous
        assert await registry.get("user-1") is not anonymous
        assert len(registry) == 2

        await registry.close_all()
        assert len(registry) == 0
        assert len(created) == 2
