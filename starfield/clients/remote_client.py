"""
Remote data service client (Parse-style REST).

Every read is `GET /classes/<class>` with `where` (JSON), `limit`, `skip`,
`keys` and `order`; the body is `{"results": [...]}`. Transport failures,
timeouts and 5xx/429 responses are transient and retried with exponential
backoff; any other non-2xx or an `{"error": ...}` body is a
`RemoteServiceError` and is not retried.

Two query shapes exist for the same logical entity because deployments differ
in how `creator` is stored (Pointer vs plain objectId string) and in which
user columns exist; callers pick `QueryShape.PRIMARY` first and fall back.
"""
import json
import logging
import time
from enum import Enum
from typing import Any, Iterable, Optional
from urllib.parse import quote

import backoff
import httpx

from starfield.config import settings
from starfield.errors import RemoteServiceError, TransientNetworkError
from starfield.telemetry import REMOTE_LATENCY

logger = logging.getLogger(__name__)

USER_CLASS = "_User"
USER_KEYS = (
    "objectId,username,sobrietyDate,createdAt,proPic,profilePicture,updatedAt,TotalComments,"
    "region,state,city,country"
)
POST_KEYS = "objectId,creator,username,content,commentCount,createdAt,image"
COMMENT_KEYS = "objectId,creator,post,content,createdAt"


class QueryShape(str, Enum):
    PRIMARY = "primary"
    FALLBACK = "fallback"


# ─────────────────────── Record normalisation ─────────────────────────────

def pointer_id(value: Any) -> Optional[str]:
    """A reference column may be a plain id or a Parse Pointer object."""
    if isinstance(value, str):
        return value or None
    if isinstance(value, dict):
        return value.get("objectId")
    return None


def user_pointer(member_id: str) -> dict:
    return {"__type": "Pointer", "className": USER_CLASS, "objectId": member_id}


def profile_picture_url(file_obj: Any, files_base: str) -> Optional[str]:
    """String URL, {url}, {uri} or {name} (resolved against the file CDN)."""
    if not file_obj:
        return None
    if isinstance(file_obj, str):
        return file_obj
    if isinstance(file_obj, dict):
        if file_obj.get("url"):
            return file_obj["url"]
        if file_obj.get("uri"):
            return file_obj["uri"]
        if file_obj.get("name"):
            return files_base + quote(file_obj["name"], safe="")
    return None


def _date_iso(value: Any) -> Optional[str]:
    if isinstance(value, dict):
        return value.get("iso")
    if isinstance(value, str):
        return value
    return None


def _location(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


class RemoteClient:
    def __init__(
        self,
        base_url: Optional[str] = None,
        app_id: Optional[str] = None,
        rest_key: Optional[str] = None,
        timeout: Optional[float] = None,
        max_tries: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url or settings.remote_base_url
        self.app_id = app_id if app_id is not None else settings.remote_app_id
        self.rest_key = rest_key if rest_key is not None else settings.remote_rest_key
        self.timeout = timeout or settings.remote_timeout
        self.files_base = f"{settings.remote_files_base_url.rstrip('/')}/{self.app_id}/"
        self._transport = transport
        self._http: Optional[httpx.AsyncClient] = None
        tries = max_tries or settings.remote_max_tries
        self._get_with_retry = backoff.on_exception(
            backoff.expo,
            TransientNetworkError,
            max_tries=tries,
            logger=logger,
        )(self._get_once)

    async def start(self) -> None:
        self._http = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=self._transport,
            headers={
                "X-Parse-Application-Id": self.app_id,
                "X-Parse-REST-API-Key": self.rest_key,
                "Content-Type": "application/json",
            },
        )

    async def stop(self) -> None:
        if self._http:
            await self._http.aclose()
            self._http = None

    def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            raise RuntimeError("RemoteClient not started — call start() first")
        return self._http

    # ─────────────────────── transport ────────────────────────────────────

    async def _get_once(self, url: str, params: dict, resource: str) -> Any:
        start = time.perf_counter()
        try:
            resp = await self._client().get(url, params=params)
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            raise TransientNetworkError(f"{resource}: {exc}") from exc
        finally:
            REMOTE_LATENCY.labels(resource=resource).observe(time.perf_counter() - start)

        if resp.status_code == 429 or resp.status_code >= 500:
            raise TransientNetworkError(f"{resource}: HTTP {resp.status_code}")
        if resp.status_code >= 400:
            try:
                message = resp.json().get("error") or resp.reason_phrase
            except ValueError:
                message = resp.reason_phrase
            raise RemoteServiceError(resp.status_code, str(message))
        return resp

    async def query(self, class_name: str, params: dict) -> list[dict]:
        """Run one class query; `None` params are dropped, dict params JSON-encoded."""
        encoded = {
            k: json.dumps(v, separators=(",", ":")) if isinstance(v, (dict, list)) else v
            for k, v in params.items()
            if v is not None
        }
        resp = await self._get_with_retry(f"/classes/{class_name}", encoded, class_name)
        try:
            body = resp.json()
        except ValueError as exc:
            raise RemoteServiceError(resp.status_code, "response was not JSON") from exc
        if isinstance(body, dict) and isinstance(body.get("error"), str):
            raise RemoteServiceError(resp.status_code, body["error"])
        results = body.get("results") if isinstance(body, dict) else None
        if class_name == USER_CLASS and not results:
            logger.debug("%s query returned 0 rows (params=%s)", class_name, encoded)
        return results or []

    # ─────────────────────── ingestion pages ──────────────────────────────

    def normalize_user(self, raw: dict) -> dict:
        total = raw.get("TotalComments")
        return {
            "id": raw.get("objectId"),
            "username": raw.get("username") or "anon",
            "sobriety_date": _date_iso(raw.get("sobrietyDate")),
            "profile_image_ref": profile_picture_url(
                raw.get("proPic") or raw.get("profilePicture"), self.files_base
            ),
            "total_comments": int(total) if total is not None else None,
            "created_at": raw.get("createdAt"),
            "region": _location(raw.get("region") or raw.get("state")),
            "city": _location(raw.get("city")),
            "country": _location(raw.get("country")),
        }

    async def fetch_user_page(
        self, skip: int, limit: int, shape: QueryShape = QueryShape.PRIMARY
    ) -> list[dict]:
        if shape is QueryShape.PRIMARY:
            params = {"keys": USER_KEYS, "limit": limit, "skip": skip, "order": "-updatedAt"}
        else:
            # No column selection or ordering: tolerates deployments missing columns
            params = {"limit": limit, "skip": skip}
        rows = await self.query(USER_CLASS, params)
        return [self.normalize_user(r) for r in rows if r.get("objectId")]

    async def fetch_post_page(self, skip: int, limit: int) -> list[dict]:
        rows = await self.query(
            "post", {"keys": POST_KEYS, "limit": limit, "skip": skip, "order": "createdAt"}
        )
        return [self._normalize_post(r) for r in rows if r.get("objectId")]

    async def fetch_comment_page(self, skip: int, limit: int) -> list[dict]:
        rows = await self.query(
            "comment", {"keys": COMMENT_KEYS, "limit": limit, "skip": skip, "order": "createdAt"}
        )
        return [
            {
                "id": r["objectId"],
                "creator": pointer_id(r.get("creator")),
                "post_id": pointer_id(r.get("post")),
                "created_at": r.get("createdAt"),
            }
            for r in rows
            if r.get("objectId")
        ]

    def _normalize_post(self, raw: dict) -> dict:
        image = raw.get("image")
        text = raw.get("content") or ""
        return {
            "id": raw["objectId"],
            "creator_id": pointer_id(raw.get("creator")) or "unknown",
            "creator_username": raw.get("username"),
            "created_at": raw.get("createdAt"),
            "region": _location(raw.get("region") or raw.get("state")),
            "city": _location(raw.get("city")),
            "country": _location(raw.get("country")),
            "comment_count": int(raw.get("commentCount") or 0),
            "image_ref": profile_picture_url(image, self.files_base),
            "text_snippet": text[:140] or None,
        }

    # ─────────────────────── search / deep links ──────────────────────────

    async def search_users(self, text: str, limit: Optional[int] = None) -> list[dict]:
        pattern = "".join("\\" + ch if not ch.isalnum() else ch for ch in text)
        rows = await self.query(
            USER_CLASS,
            {
                "where": {"username": {"$regex": pattern, "$options": "i"}},
                "keys": USER_KEYS,
                "order": "-TotalComments",
                "limit": limit or settings.search_result_limit,
            },
        )
        return [self.normalize_user(r) for r in rows if r.get("objectId")]

    async def find_user(self, slug: str) -> Optional[dict]:
        """Resolve a deep-link slug (object id or username) to one user."""
        rows = await self.query(
            USER_CLASS,
            {"where": {"$or": [{"objectId": slug}, {"username": slug}]}, "keys": USER_KEYS, "limit": 1},
        )
        return self.normalize_user(rows[0]) if rows else None

    async def fetch_profile_picture(self, member_id: str) -> Optional[str]:
        pics = await self.fetch_profile_pictures([member_id])
        return pics.get(member_id)

    async def fetch_profile_pictures(self, member_ids: Iterable[str]) -> dict[str, Optional[str]]:
        ids = list(dict.fromkeys(member_ids))
        if not ids:
            return {}
        rows = await self.query(
            USER_CLASS,
            {
                "where": {"objectId": {"$in": ids}},
                "keys": "objectId,proPic,profilePicture",
                "limit": len(ids),
            },
        )
        found = {
            r["objectId"]: profile_picture_url(r.get("proPic") or r.get("profilePicture"), self.files_base)
            for r in rows
            if r.get("objectId")
        }
        return {mid: found.get(mid) for mid in ids}

    # ─────────────────────── decorations ──────────────────────────────────

    @staticmethod
    def _creator_filter(member_id: str, shape: QueryShape) -> Any:
        return user_pointer(member_id) if shape is QueryShape.PRIMARY else member_id

    async def fetch_member_posts(
        self, member_id: str, skip: int, limit: int, shape: QueryShape = QueryShape.PRIMARY
    ) -> list[dict]:
        rows = await self.query(
            "post",
            {
                "where": {"creator": self._creator_filter(member_id, shape)},
                "keys": POST_KEYS,
                "order": "createdAt",
                "limit": limit,
                "skip": skip,
            },
        )
        return [self._normalize_post(r) for r in rows if r.get("objectId")]

    async def fetch_member_comments(
        self,
        member_id: str,
        after: Optional[str],
        limit: int,
        shape: QueryShape = QueryShape.PRIMARY,
    ) -> list[dict]:
        """Comments authored by `member_id`, oldest first, strictly after `after`."""
        where: dict = {"creator": self._creator_filter(member_id, shape)}
        if after:
            where["createdAt"] = {"$gt": {"__type": "Date", "iso": after}}
        rows = await self.query(
            "comment",
            {"where": where, "keys": "objectId,post,createdAt", "order": "createdAt", "limit": limit},
        )
        return [
            {"id": r["objectId"], "post_id": pointer_id(r.get("post")), "created_at": r.get("createdAt")}
            for r in rows
            if r.get("objectId")
        ]

    async def fetch_post_creators(self, post_ids: Iterable[str]) -> dict[str, str]:
        ids = list(dict.fromkeys(post_ids))
        if not ids:
            return {}
        rows = await self.query(
            "post",
            {"where": {"objectId": {"$in": ids}}, "keys": "objectId,creator", "limit": len(ids)},
        )
        creators = {}
        for r in rows:
            creator = pointer_id(r.get("creator"))
            if r.get("objectId") and creator:
                creators[r["objectId"]] = creator
        return creators

    async def fetch_image(self, url: str) -> bytes:
        resp = await self._get_with_retry(url, {}, "image")
        return resp.content
