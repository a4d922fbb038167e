"""
Render target seam.

The engine pushes replaceable arrays; drawing them every frame is the
renderer's job. `InMemoryRenderTarget` keeps the last arrays pushed and is
what the service and the tests use.
"""
from dataclasses import dataclass, field
from typing import Optional, Protocol

import numpy as np

from starfield.schemas import Vector3

MEMBERS = "members"


@dataclass
class PointSet:
    positions: np.ndarray      # (n, 3) float32
    colors: np.ndarray         # (n, 3) float32
    sizes: np.ndarray          # (n,)   float32
    indices: np.ndarray        # (n,)   float32


@dataclass
class LineSet:
    segments: np.ndarray       # (n, 2, 3) float32
    strengths: np.ndarray      # (n,)      float32


@dataclass
class Sprite:
    key: str
    position: Vector3
    scale: float
    texture: Optional[str] = None     # image url, or None → initials fallback
    label: Optional[str] = None


class RenderTarget(Protocol):
    def set_points(self, points: PointSet, name: str = MEMBERS) -> None: ...

    def set_lines(self, name: str, lines: LineSet) -> None: ...

    def set_sprites(self, name: str, sprites: list[Sprite]) -> None: ...


@dataclass
class InMemoryRenderTarget:
    point_sets: dict[str, PointSet] = field(default_factory=dict)
    lines: dict[str, LineSet] = field(default_factory=dict)
    sprites: dict[str, list[Sprite]] = field(default_factory=dict)
    frames: int = 0

    @property
    def points(self) -> Optional[PointSet]:
        return self.point_sets.get(MEMBERS)

    def set_points(self, points: PointSet, name: str = MEMBERS) -> None:
        self.point_sets[name] = points

    def set_lines(self, name: str, lines: LineSet) -> None:
        self.lines[name] = lines

    def set_sprites(self, name: str, sprites: list[Sprite]) -> None:
        self.sprites[name] = list(sprites)


def empty_lines() -> LineSet:
    return LineSet(
        segments=np.zeros((0, 2, 3), dtype=np.float32),
        strengths=np.zeros(0, dtype=np.float32),
    )


def line_set(segments: list[tuple[Vector3, Vector3]], strengths: list[float]) -> LineSet:
    if not segments:
        return empty_lines()
    return LineSet(
        segments=np.asarray(segments, dtype=np.float32).reshape(-1, 2, 3),
        strengths=np.asarray(strengths, dtype=np.float32),
    )
