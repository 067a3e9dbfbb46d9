"""Deterministic pseudo-QR grids for displaying credential payloads.

The grid only has to look like a QR symbol; it is not scannable. The same
payload and grid size always produce the same cells, so a change in the
rendered image means the payload itself changed.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator, List, Tuple

FNV_OFFSET_BASIS = 2166136261
FNV_PRIME = 16777619
FINDER_SIZE = 7
DEFAULT_GRID_SIZE = 25
DEFAULT_CANVAS_PX = 260
BACKGROUND_RADIUS = 20
CANVAS_INSET = 10
INK = "#0B1A17"

_ON_RESIDUES = frozenset({0, 2, 7})


def payload_seed(payload: str) -> int:
    """FNV-1a fold of ``payload`` over UTF-16 code units.

    Each step is truncated to 32 bits; the final value is read as a signed
    32-bit integer and its absolute value returned.
    """

    data = payload.encode("utf-16-le")
    if not data:
        return FNV_OFFSET_BASIS
    h = FNV_OFFSET_BASIS
    for index in range(0, len(data), 2):
        unit = data[index] | (data[index + 1] << 8)
        h = ((h ^ unit) * FNV_PRIME) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return abs(h)


def in_finder(row: int, col: int, grid_size: int) -> bool:
    edge = grid_size - FINDER_SIZE
    top_left = row < FINDER_SIZE and col < FINDER_SIZE
    top_right = row < FINDER_SIZE and col >= edge
    bottom_left = row >= edge and col < FINDER_SIZE
    return top_left or top_right or bottom_left


def finder_cell(row: int, col: int) -> bool:
    rr = row % FINDER_SIZE
    cc = col % FINDER_SIZE
    on_ring = rr in (0, 6) or cc in (0, 6)
    in_core = 2 <= rr <= 4 and 2 <= cc <= 4
    return on_ring or in_core


def data_cell(seed: int, row: int, col: int) -> bool:
    return (seed + row * 97 + col * 193) % 11 in _ON_RESIDUES


@dataclass(frozen=True, slots=True)
class Rect:
    x: float
    y: float
    width: float
    height: float
    radius: float = 0.0


@dataclass(frozen=True, slots=True)
class PseudoQR:
    """A rendered grid plus the geometry needed to draw it."""

    payload: str
    grid_size: int
    canvas_px: int
    cells: Tuple[Tuple[bool, ...], ...]

    @property
    def cell_px(self) -> float:
        return self.canvas_px / self.grid_size

    @property
    def background(self) -> Rect:
        return Rect(0, 0, self.canvas_px, self.canvas_px, radius=BACKGROUND_RADIUS)

    def is_on(self, row: int, col: int) -> bool:
        return self.cells[row][col]

    def on_cells(self) -> Iterator[Tuple[int, int]]:
        for row, values in enumerate(self.cells):
            for col, value in enumerate(values):
                if value:
                    yield row, col

    def rects(self) -> List[Rect]:
        cell = self.cell_px
        return [Rect(col * cell, row * cell, cell, cell) for row, col in self.on_cells()]

    def differing_cells(self, other: "PseudoQR") -> int:
        if other.grid_size != self.grid_size:
            raise ValueError("Grids of different sizes cannot be compared.")
        return sum(
            1
            for mine, theirs in zip(self.cells, other.cells)
            for a, b in zip(mine, theirs)
            if a != b
        )


def render(payload: str, grid_size: int = DEFAULT_GRID_SIZE, canvas_px: int = DEFAULT_CANVAS_PX) -> PseudoQR:
    """Map ``payload`` onto a ``grid_size`` square grid."""

    if grid_size < FINDER_SIZE:
        raise ValueError(f"grid_size must be at least {FINDER_SIZE}.")
    if canvas_px <= 0:
        raise ValueError("canvas_px must be positive.")
    seed = payload_seed(payload)
    cells = tuple(
        tuple(
            finder_cell(row, col) if in_finder(row, col, grid_size) else data_cell(seed, row, col)
            for col in range(grid_size)
        )
        for row in range(grid_size)
    )
    return PseudoQR(payload=payload, grid_size=grid_size, canvas_px=canvas_px, cells=cells)


def _num(value: float) -> str:
    if float(value).is_integer():
        return str(int(value))
    return repr(float(value))


def to_svg(qr: PseudoQR, *, ink: str = INK) -> str:
    """Serialise ``qr`` as a standalone SVG document."""

    size = qr.canvas_px
    inner = size - 2 * CANVAS_INSET
    rects = "\n".join(
        f'<rect x="{_num(rect.x)}" y="{_num(rect.y)}" width="{_num(rect.width)}" '
        f'height="{_num(rect.height)}" fill="{ink}"/>'
        for rect in qr.rects()
    )
    return (
        '<?xml version="1.0" encoding="UTF-8"?>\n'
        f'<svg xmlns="http://www.w3.org/2000/svg" width="{size}" height="{size}" viewBox="0 0 {size} {size}">\n'
        f'  <rect x="0" y="0" width="{size}" height="{size}" rx="{BACKGROUND_RADIUS}" ry="{BACKGROUND_RADIUS}" fill="white"/>\n'
        f'  <g transform="translate({CANVAS_INSET},{CANVAS_INSET})">\n'
        f'    <rect x="0" y="0" width="{inner}" height="{inner}" fill="white"/>\n'
        f"    {rects}\n"
        "  </g>\n"
        "</svg>"
    )


__all__ = ["PseudoQR", "Rect", "payload_seed", "render", "to_svg"]
