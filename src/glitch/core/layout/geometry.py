from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class Vec2:
    x: float = 0.0
    y: float = 0.0

    def __add__(self, other: Vec2) -> Vec2:
        return Vec2(self.x + other.x, self.y + other.y)

    def __sub__(self, other: Vec2) -> Vec2:
        return Vec2(self.x - other.x, self.y - other.y)

    def transposed(self) -> Vec2:
        return Vec2(self.y, self.x)

    def max(self, other: Vec2) -> Vec2:
        return Vec2(max(self.x, other.x), max(self.y, other.y))


@dataclass(frozen=True)
class Point:
    x: float = 0.0
    y: float = 0.0

    def __add__(self, offset: Vec2) -> Point:
        return Point(self.x + offset.x, self.y + offset.y)

    def __sub__(self, other: Point) -> Vec2:
        return Vec2(self.x - other.x, self.y - other.y)

    def transposed(self) -> Point:
        return Point(self.y, self.x)

    def as_vec(self) -> Vec2:
        return Vec2(self.x, self.y)


@dataclass(frozen=True)
class Rect:
    origin: Point
    size: Vec2

    @property
    def right(self) -> float:
        return self.origin.x + self.size.x

    @property
    def bottom(self) -> float:
        return self.origin.y + self.size.y

    def translated(self, offset: Vec2) -> Rect:
        return Rect(self.origin + offset, self.size)

    @classmethod
    def enclosing(cls, rects: list[Rect]) -> Rect | None:
        if not rects:
            return None
        left = min(r.origin.x for r in rects)
        top = min(r.origin.y for r in rects)
        right = max(r.right for r in rects)
        bottom = max(r.bottom for r in rects)
        return cls(Point(left, top), Vec2(right - left, bottom - top))
