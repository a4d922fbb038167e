"""
Display-derived values: colours, risk banding, sizes, initials.

None of these are identity. They can be recomputed from the stored fields at
any time (snapshot restore does exactly that), so they are never persisted as
the source of truth.
"""
import math
from datetime import datetime, timezone
from typing import Optional

from starfield.schemas import Vector3


def risk_color(risk: float) -> Vector3:
    """Blue → cyan → yellow → red for risk in [0, 1]."""
    if risk < 0.33:
        t = risk * 3
        return (0.0, t, 1.0)
    if risk < 0.66:
        t = (risk - 0.33) * 3
        return (t, 1.0, 1.0 - t)
    t = (risk - 0.66) * 3
    return (1.0, 1.0 - t, 0.0)


def activity_color(activity_score: float) -> Vector3:
    """Cheap colour used after a snapshot restore (0 = blue, 1 = yellow)."""
    t = min(max(activity_score, 0.0) * 5, 1.0)
    return (t, min(t * 2, 1.0), 1.0 - t)


def risk_level(risk_score: int) -> str:
    if risk_score < 33:
        return "low"
    if risk_score < 66:
        return "medium"
    return "high"


def risk_score_for(sobriety_days: int, activity: int) -> int:
    """
    Deterministic 0-100 score from the two behavioural signals we hold:
    early recovery raises it, community engagement lowers it.
    """
    risk = 0.5
    if sobriety_days < 90:
        risk += 0.25
    elif sobriety_days < 365:
        risk += 0.1
    elif sobriety_days >= 730:
        risk -= 0.15
    if activity < 10:
        risk += 0.15
    elif activity >= 50:
        risk -= 0.2
    return int(round(min(max(risk, 0.0), 1.0) * 100))


def risk_explanation(sobriety_days: int, activity: int, risk_score: int) -> str:
    factors = []
    if sobriety_days < 90:
        factors.append("early recovery stage (under 90 days)")
    if activity < 10:
        factors.append("minimal community engagement")
    if risk_score > 70:
        factors.append("elevated risk indicators from behavior patterns")

    if not factors:
        return (
            "This user shows multiple risk indicators that suggest they may "
            "benefit from additional support and monitoring."
        )
    return (
        f"This user is flagged as high risk due to {', '.join(factors)}. "
        "They may benefit from closer community support and outreach."
    )


def member_size(comment_count: int) -> float:
    return 2 + math.log(comment_count + 1) * 0.8


def activity_score(activity: int) -> float:
    return min(activity / 100, 1.0)


def sobriety_days_since(iso: Optional[str], now: Optional[datetime] = None) -> int:
    if not iso:
        return 0
    try:
        start = datetime.fromisoformat(iso.replace("Z", "+00:00"))
    except ValueError:
        return 0
    if start.tzinfo is None:
        start = start.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max(0, (now - start).days)


def initials(name: Optional[str]) -> str:
    parts = [p for p in (name or "").replace("_", " ").split() if p]
    if not parts:
        return "?"
    return "".join(p[0] for p in parts[:2]).upper()
