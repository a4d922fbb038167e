"""
Shared fixtures.

Two remote doubles are available:
  FakeParse   — an httpx.MockTransport handler speaking the Parse REST dialect,
                used to exercise the real RemoteClient end to end.
  FakeRemote  — an in-process object with RemoteClient's method surface, used
                by engine-level tests; member post fetches and lookups can be gated.
"""
import asyncio
import json
import os
import re

os.environ.setdefault("TRACING_ENABLED", "false")
os.environ.setdefault("KV_BACKEND", "memory")

import httpx
import pytest

from starfield.clients.kv_store import MemoryKeyValueStore
from starfield.clients.remote_client import QueryShape, RemoteClient, pointer_id


# ─────────────────────────── Parse-style transport ────────────────────────

def _matches(row: dict, where: dict) -> bool:
    for key, cond in where.items():
        if key == "$or":
            if not any(_matches(row, c) for c in cond):
                return False
            continue
        value = row.get(key)
        if isinstance(cond, dict) and "$regex" in cond:
            if not re.search(cond["$regex"], str(value or ""), re.IGNORECASE):
                return False
        elif isinstance(cond, dict) and "$in" in cond:
            if value not in cond["$in"]:
                return False
        elif isinstance(cond, dict) and "$gt" in cond:
            if not value or value <= cond["$gt"]["iso"]:
                return False
        elif isinstance(cond, dict) and cond.get("__type") == "Pointer":
            if pointer_id(value) != cond["objectId"]:
                return False
        elif pointer_id(value) != cond and value != cond:
            return False
    return True


class FakeParse:
    def __init__(self) -> None:
        self.classes: dict[str, list[dict]] = {"_User": [], "post": [], "comment": []}
        self.requests: list[httpx.Request] = []
        self.fail_status: int | None = None
        self.fail_after: int | None = None
        self.primary_users_empty = False

    def add_user(self, object_id: str, username: str, **extra) -> dict:
        row = {"objectId": object_id, "username": username, **extra}
        self.classes["_User"].append(row)
        return row

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail_status is not None or (
            self.fail_after is not None and len(self.requests) > self.fail_after
        ):
            return httpx.Response(self.fail_status or 500, json={"error": "service unavailable"})
        path = request.url.path
        if not path.startswith("/classes/"):
            return httpx.Response(200, content=b"\x89PNG")
        class_name = path.rsplit("/", 1)[-1]
        params = request.url.params
        if (
            self.primary_users_empty
            and class_name == "_User"
            and "keys" in params
            and "where" not in params
        ):
            return httpx.Response(200, json={"results": []})
        where = json.loads(params["where"]) if "where" in params else {}
        rows = [r for r in self.classes.get(class_name, []) if _matches(r, where)]
        skip = int(params.get("skip", 0))
        limit = int(params.get("limit", 100))
        return httpx.Response(200, json={"results": rows[skip : skip + limit]})


@pytest.fixture
def fake_parse():
    return FakeParse()


@pytest.fixture
async def remote_client(fake_parse):
    client = RemoteClient(
        base_url="https://parse.test",
        app_id="app",
        rest_key="key",
        max_tries=1,
        transport=httpx.MockTransport(fake_parse.handler),
    )
    await client.start()
    yield client
    await client.stop()


@pytest.fixture
def kv():
    return MemoryKeyValueStore()


# ─────────────────────────── In-process remote ────────────────────────────

def user(member_id: str, username: str, **extra) -> dict:
    return {
        "id": member_id,
        "username": username,
        "sobriety_date": extra.get("sobriety_date"),
        "profile_image_ref": extra.get("profile_image_ref"),
        "total_comments": extra.get("total_comments"),
        "region": extra.get("region"),
        "city": extra.get("city"),
        "country": extra.get("country"),
    }


def post(post_id: str, creator_id: str, created_at: str, comment_count: int = 0) -> dict:
    return {
        "id": post_id,
        "creator_id": creator_id,
        "creator_username": None,
        "created_at": created_at,
        "comment_count": comment_count,
        "image_ref": None,
        "text_snippet": None,
    }


def comment(comment_id: str, creator: str, post_id: str, created_at: str) -> dict:
    return {"id": comment_id, "creator": creator, "post_id": post_id, "created_at": created_at}


class FakeRemote:
    def __init__(self, users=None, posts=None, comments=None) -> None:
        self.users = list(users or [])
        self.posts = list(posts or [])
        self.comments = list(comments or [])
        self.gates: dict[str, asyncio.Event] = {}
        self.post_requests: list[str] = []

    async def start(self) -> None:
        pass

    async def stop(self) -> None:
        pass

    async def fetch_user_page(self, skip, limit, shape=QueryShape.PRIMARY):
        return [dict(u) for u in self.users[skip : skip + limit]]

    async def fetch_post_page(self, skip, limit):
        return [dict(p) for p in self.posts[skip : skip + limit]]

    async def fetch_comment_page(self, skip, limit):
        return [dict(c) for c in self.comments[skip : skip + limit]]

    async def search_users(self, text, limit=None):
        q = text.lower()
        return [dict(u) for u in self.users if q in u["username"].lower()]

    async def find_user(self, slug):
        gate = self.gates.get(slug)
        if gate is not None:
            await gate.wait()
        return next((dict(u) for u in self.users if slug in (u["id"], u["username"])), None)

    async def fetch_profile_picture(self, member_id):
        return None

    async def fetch_profile_pictures(self, member_ids):
        return {mid: None for mid in member_ids}

    async def fetch_member_posts(self, member_id, skip, limit, shape=QueryShape.PRIMARY):
        self.post_requests.append(member_id)
        gate = self.gates.get(member_id)
        if gate is not None:
            await gate.wait()
        mine = [dict(p) for p in self.posts if p["creator_id"] == member_id]
        return mine[skip : skip + limit]

    async def fetch_member_comments(self, member_id, after, limit, shape=QueryShape.PRIMARY):
        mine = [
            {"id": c["id"], "post_id": c["post_id"], "created_at": c["created_at"]}
            for c in self.comments
            if c["creator"] == member_id and (after is None or c["created_at"] > after)
        ]
        return mine[:limit]

    async def fetch_post_creators(self, post_ids):
        wanted = set(post_ids)
        return {p["id"]: p["creator_id"] for p in self.posts if p["id"] in wanted}

    async def fetch_image(self, url):
        return b"\x89PNG"


@pytest.fixture
def fake_remote():
    return FakeRemote(
        users=[
            user(
                "u1",
                "alice",
                sobriety_date="2020-01-01T00:00:00.000Z",
                total_comments=12,
                country="Canada",
                region="Ontario",
                city="Toronto",
            ),
            user("u2", "bob", total_comments=3, country="Canada", region="Quebec"),
            user("u3", "carol", country="United States"),
        ],
        posts=[
            post("p1", "u1", "2024-01-01T00:00:00.000Z", 2),
            post("p2", "u2", "2024-01-02T00:00:00.000Z"),
            post("p3", "u2", "2024-01-03T00:00:00.000Z"),
        ],
        comments=[
            comment("c1", "u2", "p1", "2024-02-01T00:00:00.000Z"),
            comment("c2", "u1", "p2", "2024-02-02T00:00:00.000Z"),
            comment("c3", "u1", "p3", "2024-02-03T00:00:00.000Z"),
        ],
    )
