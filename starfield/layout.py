"""
Layout oracle: assigns 3-D coordinates to members from graph structure.

The engine only depends on the `LayoutOracle` protocol. `HashLayout` is the
bundled deterministic implementation: members connected by comments share a
neighbourhood, neighbourhood centres sit on a sphere chosen by an FNV-1a hash,
and each member is offset inside its neighbourhood by its own hash. The same
data and session count always produce the same positions.
"""
import math
from dataclasses import dataclass, field
from typing import Optional, Protocol

from starfield.schemas import Vector3

_FNV_OFFSET = 0x811C9DC5
_FNV_PRIME = 0x01000193


def hash32(value: object) -> int:
    """FNV-1a over the UTF-16 code units of str(value)."""
    h = _FNV_OFFSET
    data = str(value).encode("utf-16-le")
    for i in range(0, len(data), 2):
        h ^= data[i] | (data[i + 1] << 8)
        h = (h * _FNV_PRIME) & 0xFFFFFFFF
    return h


def seed_to_float(seed: object) -> float:
    return (hash32(seed) & 0x7FFFFFFF) / 0x7FFFFFFF


def seed_to_pos(seed: object, radius: float) -> Vector3:
    """Deterministic point on a sphere of `radius` derived from `seed`."""
    s1 = seed_to_float(seed)
    s2 = seed_to_float(f"{seed}_p")
    theta = s1 * math.pi * 2
    phi = math.acos(2 * s2 - 1)
    return (
        radius * math.sin(phi) * math.cos(theta),
        radius * math.sin(phi) * math.sin(theta),
        radius * math.cos(phi),
    )


# ─────────────────────────── State ────────────────────────────────────────

@dataclass
class LayoutState:
    """Everything ingestion has gathered that the layout can use."""
    members: dict[str, dict] = field(default_factory=dict)    # id -> {username, sobriety}
    posts: dict[str, dict] = field(default_factory=dict)      # id -> {creator, comment_count}
    comments: dict[str, dict] = field(default_factory=dict)   # id -> {from, post_id}
    session_count: int = 0
    master_seed: int = 0
    targets: dict[str, Vector3] = field(default_factory=dict)

    def add_member(self, member_id: str, username: str = "", sobriety: Optional[str] = None) -> None:
        self.members.setdefault(member_id, {}).update(username=username, sobriety=sobriety)

    def add_post(self, post_id: str, creator: str, comment_count: int = 0) -> None:
        self.posts[post_id] = {"creator": creator, "comment_count": comment_count}

    def add_comment(self, comment_id: str, from_member: str, post_id: str) -> None:
        self.comments[comment_id] = {"from": from_member, "post_id": post_id}


@dataclass
class LayoutParams:
    nh_radius_base: float = 80.0
    nh_radius_scale: float = 16.0
    local_radius_base: float = 4.0
    local_radius_scale: float = 0.5


class LayoutOracle(Protocol):
    def create_state(self) -> LayoutState: ...

    def evolve(self, state: LayoutState, params: Optional[LayoutParams] = None) -> dict[str, Vector3]: ...

    def seed_to_pos(self, member_id: str, radius: float) -> Vector3: ...


# ─────────────────────────── Hash layout ──────────────────────────────────

class HashLayout:
    def create_state(self) -> LayoutState:
        return LayoutState()

    def seed_to_pos(self, member_id: str, radius: float) -> Vector3:
        return seed_to_pos(member_id, radius)

    @staticmethod
    def _clusters(state: LayoutState) -> list[list[str]]:
        parent = {mid: mid for mid in state.members}

        def find(x: str) -> str:
            while parent[x] != x:
                parent[x] = parent[parent[x]]
                x = parent[x]
            return x

        for comment in state.comments.values():
            post = state.posts.get(comment.get("post_id"))
            a, b = comment.get("from"), post and post.get("creator")
            if a in parent and b in parent and a != b:
                ra, rb = find(a), find(b)
                if ra != rb:
                    parent[max(ra, rb)] = min(ra, rb)

        groups: dict[str, list[str]] = {}
        for mid in state.members:
            groups.setdefault(find(mid), []).append(mid)
        return [sorted(g) for _, g in sorted(groups.items())]

    def evolve(self, state: LayoutState, params: Optional[LayoutParams] = None) -> dict[str, Vector3]:
        """One layout pass over the whole state; records and returns targets."""
        params = params or LayoutParams()
        state.session_count += 1
        seed = hash32(
            f"ses:{state.session_count}:m{len(state.members)}:p{len(state.posts)}"
            f":c{len(state.comments)}:prev{state.master_seed}"
        )
        clusters = self._clusters(state)
        nh_radius = params.nh_radius_base + len(clusters) * params.nh_radius_scale

        positions: dict[str, Vector3] = {}
        for index, cluster in enumerate(clusters):
            cluster_hash = hash32("|".join(cluster))
            cx, cy, cz = seed_to_pos(f"nh:{index}:{cluster_hash}:{seed}", nh_radius)
            local_r = params.local_radius_base + math.log(1 + len(cluster)) * params.local_radius_scale
            for mid in cluster:
                lx, ly, lz = seed_to_pos(f"m:{mid}:{seed}", local_r)
                positions[mid] = (cx + lx, cy + ly, cz + lz)

        state.master_seed = seed
        state.targets = positions
        return positions
