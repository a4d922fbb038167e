"""
Member search: debounced, cached and cancellable.

Each keystroke issues a new search generation; only the latest generation
publishes results. Ranking is exact username match, then prefix, then any
other match, each tier by total comments.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Optional

from starfield.cache import CacheLayer
from starfield.clients.remote_client import RemoteClient
from starfield.config import settings
from starfield.entity_store import EntityStore
from starfield.errors import RemoteServiceError, TransientNetworkError
from starfield.events import EventBus
from starfield.guard import GenerationGuard
from starfield.layout import LayoutOracle
from starfield.presentation import sobriety_days_since
from starfield.schemas import MemberSummary, SearchResult

logger = logging.getLogger(__name__)

FALLBACK_RADIUS = 80.0


def rank(query: str, users: list[dict]) -> list[dict]:
    q = query.strip().lower()

    def tier(u: dict) -> int:
        name = (u.get("username") or "").lower()
        if name == q:
            return 0
        if name.startswith(q):
            return 1
        return 2

    return sorted(users, key=lambda u: (tier(u), -(u.get("total_comments") or 0)))


class MemberSearch:
    def __init__(
        self,
        store: EntityStore,
        remote: RemoteClient,
        caches: CacheLayer,
        layout: LayoutOracle,
        events: Optional[EventBus] = None,
        debounce: Optional[float] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.store = store
        self.remote = remote
        self.caches = caches
        self.layout = layout
        self.events = events or EventBus()
        self.debounce = settings.search_debounce if debounce is None else debounce
        self._sleep = sleep
        self.guard = GenerationGuard("search")
        self.last_query: Optional[str] = None
        self.results: list[SearchResult] = []

    def on_input(self, text: str) -> Optional[asyncio.Task]:
        """Keystroke handler: restart the debounce window."""
        token = self.guard.issue()
        query = text.strip()
        if not query:
            self._publish(token, "", [])
            return None
        return self.guard.spawn(self._debounced(query, token), token)

    async def _debounced(self, query: str, token: int) -> list[SearchResult]:
        await self._sleep(self.debounce)
        self.guard.check(token)
        return await self._search(query, token)

    async def search(self, text: str) -> list[SearchResult]:
        """Immediate search (no debounce) that still supersedes older generations."""
        token = self.guard.issue()
        query = text.strip()
        if not query:
            self._publish(token, "", [])
            return []
        return await self._search(query, token)

    async def _search(self, query: str, token: int) -> list[SearchResult]:
        key = query.lower()
        users = self.caches.search.get(key)
        if users is None:
            try:
                users = rank(query, await self.remote.search_users(query))
            except (RemoteServiceError, TransientNetworkError) as exc:
                logger.warning("Search for %r failed: %s", query, exc)
                self.guard.check(token)
                self._publish(token, query, [])
                return []
            self.guard.check(token)
            await self._resolve_pictures(users)
            self.guard.check(token)
            self.caches.search.set(key, users)
        results = [self._to_result(u) for u in users[: settings.search_result_limit]]
        self._publish(token, query, results)
        return results

    async def _resolve_pictures(self, users: list[dict]) -> None:
        for u in users:
            if u.get("profile_image_ref"):
                self.caches.profile_pics.set(u["id"], u["profile_image_ref"])
        missing = [u["id"] for u in users if not u.get("profile_image_ref") and u["id"] not in self.caches.profile_pics]
        if not missing:
            return
        try:
            pics = await self.remote.fetch_profile_pictures(missing)
        except (RemoteServiceError, TransientNetworkError) as exc:
            logger.debug("Batch profile picture lookup failed: %s", exc)
            return
        for u in users:
            if u["id"] in pics:
                self.caches.profile_pics.set(u["id"], pics[u["id"]])
                u["profile_image_ref"] = u.get("profile_image_ref") or pics[u["id"]]

    def _to_result(self, user: dict) -> SearchResult:
        slot = self.store.slot_of(user["id"])
        return SearchResult(
            member=MemberSummary(
                id=user["id"],
                username=user.get("username") or "anon",
                profile_image_ref=user.get("profile_image_ref"),
                sobriety_date=user.get("sobriety_date"),
                sobriety_days=sobriety_days_since(user.get("sobriety_date")),
                total_comments=user.get("total_comments") or 0,
            ),
            slot=slot if slot is not None else -1,
            is_new=user["id"] not in self.store,
        )

    def _publish(self, token: int, query: str, results: list[SearchResult]) -> None:
        self.guard.check(token)
        self.last_query = query
        self.results = results
        self.events.set_value("search.results", results)
        self.events.set_visible("search_results", bool(results))

    def adopt(self, result: SearchResult) -> str:
        """Make a chosen result selectable, appending it if the store lacks it."""
        member = result.member
        if member.id not in self.store:
            self.store.append(
                member.id,
                position=self.layout.seed_to_pos(member.id, FALLBACK_RADIUS),
                username=member.username,
                profile_image_ref=member.profile_image_ref,
                sobriety_date=member.sobriety_date,
                sobriety_days=member.sobriety_days,
                total_comments=member.total_comments,
                cluster_label="Search",
            )
            logger.info("Added %s from search at a fallback position", member.id)
        return member.id

    def find(self, member_id: str) -> Optional[SearchResult]:
        return next((r for r in self.results if r.member.id == member_id), None)
