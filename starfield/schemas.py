"""
Pydantic models shared by the engine, the persisted documents and the HTTP
layer. Persisted documents (cursor, snapshot, nav-cache mirror) are validated
on load, so a shape mismatch surfaces as a ValidationError the persistence
layer can turn into "absent".
"""
from typing import Optional

from pydantic import BaseModel, Field


Vector3 = tuple[float, float, float]


# ──────────────────────────── Members ─────────────────────────────────────

class Member(BaseModel):
    """Read model of one member: side-table metadata plus its buffer row."""
    id: str
    username: str = "Anonymous"
    profile_image_ref: Optional[str] = None
    position: Optional[Vector3] = None
    risk_score: int = 50                  # 0-100, presentation only
    risk_level: str = "medium"            # 'low' | 'medium' | 'high'
    activity: int = 0                     # posts + comments seen by ingestion
    activity_score: float = 0.0           # normalised 0-1
    size: float = 2.0
    sobriety_days: int = 0
    sobriety_date: Optional[str] = None
    total_comments: Optional[int] = None
    cluster_label: str = "Real Data"
    region: Optional[str] = None
    city: Optional[str] = None
    country: Optional[str] = None
    slot: Optional[int] = None            # None when beyond the render cap


class MemberSummary(BaseModel):
    id: str
    username: str
    profile_image_ref: Optional[str] = None
    sobriety_date: Optional[str] = None
    sobriety_days: int = 0
    total_comments: int = 0


class MemberDetail(BaseModel):
    """What the detail panel shows for the selected member."""
    member: Member
    risk_explanation: Optional[str] = None
    initials: str
    beams_count: int = 0
    planets_count: int = 0
    supporters: list[str] = Field(default_factory=list)


# ──────────────────────────── Posts / engagement ──────────────────────────

class Post(BaseModel):
    id: str
    creator_id: str
    created_at: Optional[str] = None
    comment_count: int = 0
    image_ref: Optional[str] = None
    text_snippet: Optional[str] = None


class PostSet(BaseModel):
    member_id: str
    posts: list[Post]
    capped: bool = False


class EngagementComment(BaseModel):
    """One comment resolved to a member → member edge, fed back into layout."""
    from_member: str
    to_member: str
    post_id: Optional[str] = None


class EngagementEdge(BaseModel):
    source_member_id: str
    target_member_id: str
    strength: int


class BeamData(BaseModel):
    member_id: str
    engagement_count: dict[str, int] = Field(default_factory=dict)
    post_creator_map: dict[str, str] = Field(default_factory=dict)
    comment_count: int = 0
    comments_for_layout: list[EngagementComment] = Field(default_factory=list)


# ──────────────────────────── Ingestion / persistence ─────────────────────

class IngestionCursor(BaseModel):
    user_skip: int = 0
    post_skip: int = 0
    comment_skip: int = 0
    total_members: int = 0
    is_complete: bool = False
    last_update: Optional[float] = None


class SnapshotMember(BaseModel):
    id: str
    username: str = "Anonymous"
    pro_pic: Optional[str] = None
    x: float = 0.0
    y: float = 0.0
    z: float = 0.0
    size: float = 1.0
    activity: float = 0.0
    sobriety_days: int = 0
    region: Optional[str] = None
    city: Optional[str] = None
    country: Optional[str] = None


class Snapshot(BaseModel):
    version: int
    timestamp: float
    skips: IngestionCursor
    members: list[SnapshotMember]


class BeamCacheEntry(BaseModel):
    user_id: str
    engagement_count: dict[str, int] = Field(default_factory=dict)
    post_creator_map: dict[str, str] = Field(default_factory=dict)
    comments_for_layout: list[EngagementComment] = Field(default_factory=list)
    comment_count: int = 0
    timestamp: float = 0.0


class PostCacheEntry(BaseModel):
    user_id: str
    posts: list[Post] = Field(default_factory=list)
    capped: bool = False
    timestamp: float = 0.0


class NavCache(BaseModel):
    version: int
    beam_cache: list[BeamCacheEntry] = Field(default_factory=list)
    post_cache: list[PostCacheEntry] = Field(default_factory=list)


# ──────────────────────────── Search ──────────────────────────────────────

class SearchResult(BaseModel):
    member: MemberSummary
    slot: int = -1
    is_new: bool = True


# ──────────────────────────── Location filter ─────────────────────────────

class LocationFilter(BaseModel):
    """Empty fields match every member."""
    country: str = Field("", max_length=100)
    region: str = Field("", max_length=100)
    city: str = Field("", max_length=100)


class LocationOptions(BaseModel):
    countries: list[str] = Field(default_factory=list)
    regions: list[str] = Field(default_factory=list)
    cities: list[str] = Field(default_factory=list)
    active: LocationFilter = Field(default_factory=LocationFilter)


class LocationFilterResponse(BaseModel):
    filter: LocationFilter
    visible: int
    total: int


# ──────────────────────────── Jobs ────────────────────────────────────────

class JobRecord(BaseModel):
    id: int
    name: str
    type: str
    status: str = "running"               # 'running' | 'completed' | 'error'
    progress: float = 0.0
    message: str = "Initializing..."
    start_time: float


# ──────────────────────────── HTTP transport ──────────────────────────────

class SearchRequest(BaseModel):
    text: str = Field(..., max_length=100)


class SearchResponse(BaseModel):
    query: str
    results: list[SearchResult]


class SelectRequest(BaseModel):
    id: str = Field(..., min_length=1)


class SelectionResponse(BaseModel):
    state: str
    detail: Optional[MemberDetail] = None


class UniverseResponse(BaseModel):
    slots: int
    known_members: int
    cursor: IngestionCursor
    ingestion_state: str
