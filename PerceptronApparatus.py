#!/usr/bin/env python3

"""
Perceptron Apparatus Board Generator
Turns a feed-forward network topology (input, hidden, output unit counts) into a
circular board of rings: scale rings, azimuthal slider banks and radial weight-matrix
slider banks, laid out for CNC routing or laser cutting.

Table of Contents
   1. Setup
   2. Fundamental Functions
   3. Scale Generating Functions
   4. Primitives
   5. Rings
   6. Board Layout
   7. Output
   8. Models
   9. Commands
"""

# ----------------------1. Setup----------------------------

import math
import os
import re
import time
from dataclasses import dataclass, replace
from decimal import Decimal
from enum import Enum
from typing import NamedTuple, Union

import toml
from PIL import Image, ImageDraw, ImageFont
import drawsvg as svg


# Angular constants:
DEG_FULL = 360
DEG_SEMI = DEG_FULL // 2
DEG_RT = DEG_SEMI // 2

E0 = 1e-9
"""radii at or below this are degenerate"""

LETTER_BASE = 64
"""chr(LETTER_BASE + 1) == 'A'"""


class Color(Enum):
    WHITE, BLACK = 'white', 'black'
    RED = 'red'
    FULL_GREEN = '#6ab04c'  # full-depth cuts
    SLIDER_ORANGE = '#f0932b'  # slider channels

    @classmethod
    def to_str(cls, col):
        return col.value if isinstance(col, Color) else col

    @classmethod
    def from_str(cls, color: str):
        return getattr(cls, color.upper(), color)


class OutFormat(Enum):
    PNG, SVG = 'png', 'svg'


class CutLayer(Enum):
    """Fabrication passes. Each value is the CSS selector of the elements cut in that pass."""
    TOP_FULL = '.top.full'
    TOP_ETCH = '.top.etch:not(.heavy)'
    TOP_ETCH_HEAVY = '.top.etch.heavy'
    TOP_SLIDER = '.top.slider'
    BOTTOM_SLIDER = '.bottom.slider'
    BOTTOM_ROTATING = '.bottom.rotating'

    @property
    def file_suffix(self):
        return self.name.lower().replace('_', '-')

    def matches(self, classes: str) -> bool:
        cls_set = set(classes.split())
        if self == CutLayer.TOP_ETCH:
            return {'top', 'etch'} <= cls_set and 'heavy' not in cls_set
        return set(self.value.strip('.').split('.')) <= cls_set


class WidthPolicy(Enum):
    """How the space left over by fixed-width rings is shared among weight rings."""
    EQUAL = 'equal'
    WEIGHTED = 'weighted'


class ApparatusError(ValueError):
    """Configuration error: detected before anything is rendered."""


class InvalidRangeError(ApparatusError):
    pass


class LayoutOverflowError(ApparatusError):
    pass


class MissingContextError(RuntimeError):
    """A ring was rendered before the board assigned it a position."""


DEBUG = False


@dataclass(frozen=True)
class Style:
    full_color: Color = Color.FULL_GREEN
    """stroke color for full-depth cuts"""
    slider_color: Color = Color.SLIDER_ORANGE
    """stroke color for slider channels and rotating voids"""
    etch_color: Color = Color.BLACK
    """stroke color for etched ticks and guide lines"""
    text_color: Color = Color.BLACK
    bg: Color = None
    """document background; None leaves it transparent"""
    font_family: str = 'Libertinus Sans'
    font_size: float = 12
    index_font_size: float = 8

    full_w: float = 1
    etch_w: float = 0.5
    etch_heavy_w: float = 1.5
    top_slider_w: float = 3
    bottom_slider_w: float = 8
    bottom_opacity: float = 0.3

    @classmethod
    def from_dict(cls, style_def: dict):
        style_def = dict(style_def)
        for key in ('full_color', 'slider_color', 'etch_color', 'text_color', 'bg'):
            if key in style_def:
                style_def[key] = Color.from_str(style_def[key])
        return cls(**style_def)

    def font_size_for(self, classes: str):
        return self.index_font_size if 'indices' in classes.split() else self.font_size

    def color_for(self, classes: str):
        """Stroke color for an element, following the same precedence as the stylesheet."""
        cls_set = set(classes.split())
        if 'slider' in cls_set or 'rotating' in cls_set:
            return self.slider_color
        if 'full' in cls_set:
            return self.full_color
        if 'debug' in cls_set:
            return Color.RED
        return self.etch_color

    def stroke_w_for(self, classes: str):
        cls_set = set(classes.split())
        if 'slider' in cls_set:
            return self.bottom_slider_w if 'bottom' in cls_set else self.top_slider_w
        if 'full' in cls_set:
            return self.full_w
        if 'heavy' in cls_set:
            return self.etch_heavy_w
        return self.etch_w

    def css(self):
        c = Color.to_str
        return f"""
svg {{
  stroke: black;
  fill: transparent;
}}
text {{
  font-family: "{self.font_family}";
  font-size: {self.font_size}px;
  fill: {c(self.text_color)};
  stroke: none;
}}
text.indices {{
  font-size: {self.index_font_size}px;
}}
.full {{
  stroke-width: {self.full_w};
  stroke: {c(self.full_color)};
}}
.slider {{
  stroke: {c(self.slider_color)};
}}
.top.slider {{
  stroke-width: {self.top_slider_w};
}}
.bottom.slider {{
  stroke-width: {self.bottom_slider_w};
  opacity: {self.bottom_opacity};
}}
.bottom.rotating {{
  stroke: {c(self.slider_color)};
  opacity: {self.bottom_opacity};
}}
.etch {{
  stroke-width: {self.etch_w};
  stroke: {c(self.etch_color)};
}}
.etch.heavy {{
  stroke-width: {self.etch_heavy_w};
}}
.fastener {{
  fill: {c(Color.WHITE)};
}}
.debug {{
  {'' if DEBUG else 'display: none;'}
  stroke: red;
  fill: transparent;
}}
"""


class Styles:
    Default = Style()
    Print = Style(full_color=Color.WHITE, slider_color=Color.WHITE, etch_color=Color.WHITE,
                  text_color=Color.WHITE, bg=Color.BLACK)
    """white on black, for printing onto dark stock"""


@dataclass(frozen=True)
class Geometry:
    """Board Geometric Parameters (all in mm)"""
    size: float = 1200.0
    """apparatus diameter"""
    radial_padding: float = 30.0
    """gap between consecutive rings"""
    center_diameter: float = 300.0
    """reserved for the centre plate (logo/QR)"""
    svg_padding: float = 10.0
    """margin around the board edge in the output document"""

    rule_ring_w: float = 30.0
    slider_ring_w: float = 10.0
    weight_ring_w: float = 25.0
    """declared width of weight rings; the layout overrides it"""
    width_policy: WidthPolicy = WidthPolicy.EQUAL

    rule_tick_len: float = 10.0
    az_tick_len: float = 14.0
    label_gap: float = 12.2
    """arc length kept free at each end of a slider for the boundary labels"""
    slider_overrun: float = 4.0
    """how far the bottom slider body extends past each end of its groove"""
    radial_margin: float = 5.0
    """inset of radial sliders from both edges of their ring"""
    index_offset: float = 10.0
    """distance of a group index label inside its radial ring"""

    fastener_r: float = 3.0
    ring_fasteners: int = 6
    center_fasteners: int = 3

    PixelsPerMM = 2

    @property
    def radius(self):
        return self.size / 2

    @property
    def center_radius(self):
        return self.center_diameter / 2

    @property
    def total_w(self):
        return self.size + 2 * self.svg_padding

    @property
    def view_box(self):
        """(x, y, w, h) centred on the board"""
        half = self.radius + self.svg_padding
        return -half, -half, self.total_w, self.total_w

    @classmethod
    def dim_to_mm(cls, dim) -> float:
        if matches := re.match(r'^\s*(-?[\d.]+)\s*(\w*)\s*$', dim) if isinstance(dim, str) else None:
            num, units = matches.group(1), matches.group(2)
            result = float(num)
            if units == 'cm':
                result *= 10
            elif units == 'm':
                result *= 1000
            elif units == 'in':
                result *= 25.4
            elif units not in ('', 'mm'):
                raise ApparatusError(f'Unrecognized unit in dimension: {dim}')
            return result
        return dim

    @classmethod
    def from_dict(cls, geometry_def: dict):
        geometry_def = dict(geometry_def)
        for k, v in geometry_def.items():
            if isinstance(v, str) and k != 'width_policy':
                geometry_def[k] = cls.dim_to_mm(v)
        if 'width_policy' in geometry_def:
            geometry_def['width_policy'] = WidthPolicy(geometry_def['width_policy'])
        return cls(**geometry_def)


# ----------------------2. Fundamental Functions----------------------------


def to_decimal(x) -> Decimal:
    """Exact decimal for a number as written, so 0.1 stays 0.1."""
    if isinstance(x, Decimal):
        return x
    return Decimal(str(x))


def dec_str(val: Decimal) -> str:
    """Normalized decimal string: 1.0 -> '1', 10 -> '10', 0.50 -> '0.5'"""
    if val == 0:
        return '0'
    return format(val.normalize(), 'f')


def is_integral(val: Decimal) -> bool:
    return val == val.to_integral_value()


def drange(start, stop, step=1):
    """range(), but with Decimals and an inclusive stop"""
    start, stop, step = to_decimal(start), to_decimal(stop), to_decimal(step)
    if step <= 0:
        raise InvalidRangeError(f'Step must be positive, got {step}')
    i = 0
    val = start
    while val <= stop:
        yield val
        i += 1
        val = start + step * i


def polar(r: float, theta: float):
    """Point at radius r and apparatus angle theta (degrees, counter-clockwise from the bottom)."""
    rad = math.radians(theta)
    return r * math.sin(rad), r * math.cos(rad)


def arc_deg(arc_len: float, r: float) -> float:
    """Angle in degrees subtended by an arc length at radius r"""
    return math.degrees(arc_len / r)


def layer_letter(layer_index: int) -> str:
    return chr(LETTER_BASE + layer_index)


# ----------------------3. Scale Generating Functions----------------------------


@dataclass(frozen=True)
class Tick:
    value: Decimal
    label: str = None
    """None for a minor (unlabeled) tick"""
    angle: float = None
    """position in degrees, for scales read around a dial"""

    @property
    def is_major(self):
        return self.label is not None


@dataclass(frozen=True)
class Scale:
    """Ordered ticks, strictly increasing in value."""
    ticks: tuple[Tick, ...]
    key: str = None
    """short name for lookup and diagnostics"""

    def __post_init__(self):
        if not self.ticks:
            raise InvalidRangeError(f'Scale {self.key or ""} has no ticks')
        for a, b in zip(self.ticks, self.ticks[1:]):
            if not a.value < b.value:
                raise InvalidRangeError(f'Scale {self.key or ""} is not increasing at {a.value}, {b.value}')

    def __len__(self):
        return len(self.ticks)

    def __iter__(self):
        return iter(self.ticks)

    @property
    def min_value(self) -> Decimal:
        return self.ticks[0].value

    @property
    def max_value(self) -> Decimal:
        return self.ticks[-1].value

    def value_range(self):
        return self.min_value, self.max_value

    @property
    def values(self):
        return [t.value for t in self.ticks]

    @property
    def labels(self):
        return [t.label for t in self.ticks]

    @property
    def angles(self):
        return [t.angle for t in self.ticks]

    def labeled(self):
        return [t for t in self.ticks if t.is_major]

    def frac_pos_of(self, value) -> float:
        """Fraction of the way from min to max, 0 for a single-valued scale."""
        span = float(self.max_value - self.min_value)
        if span == 0:
            return 0.
        return float(to_decimal(value) - self.min_value) / span


def linear_rule(start, stop, step, major_step, key: str = None) -> Scale:
    """Evenly stepped ticks from start to stop inclusive, labeled at multiples of major_step."""
    start, stop, step, major_step = map(to_decimal, (start, stop, step, major_step))
    if step <= 0 or major_step <= 0:
        raise InvalidRangeError(f'Steps must be positive, got step={step} major_step={major_step}')
    if start > stop:
        raise InvalidRangeError(f'Start {start} is past stop {stop}')
    return Scale(tuple(Tick(val, dec_str(val) if val % major_step == 0 else None)
                       for val in drange(start, stop, step)),
                 key=key or f'{dec_str(start)}..{dec_str(stop)}')


LOG_MIN, LOG_MAX = Decimal('1.0'), Decimal('9.9')
TWO_TENTHS, HALF = Decimal('0.2'), Decimal('0.5')


def log_angle(value) -> float:
    """One full revolution per decade"""
    return DEG_FULL * (math.log(float(value)) - math.log(1.)) / (math.log(10.) - math.log(1.))


def log_label(val: Decimal):
    """Dense labels where the log curve is steep, sparse where it flattens."""
    if val < 2:
        return dec_str(val)
    if val <= 5 and val % TWO_TENTHS == 0:
        return dec_str(val)
    if val > 5 and val % HALF == 0:
        return dec_str(val)
    return None


def log_rule() -> Scale:
    """Slide-rule C scale wrapped around a dial: 1.0 to 9.9 in tenths."""
    return Scale(tuple(Tick(val, log_label(val), log_angle(val))
                       for val in (Decimal(x).scaleb(-1) for x in range(10, 100))),
                 key='log')


def relu_rule(max_value, delta_value) -> tuple[Scale, Scale]:
    """
    Two coupled scales sharing tick angles: the outer reads the raw value on -max..max,
    the inner reads the same position after clamping negatives to 0.
    The positive half spans 180°; the negative half mirrors it without repeating 0 or ±max.
    """
    max_value, delta_value = to_decimal(max_value), to_decimal(delta_value)
    if max_value <= 0 or delta_value <= 0:
        raise InvalidRangeError(f'ReLU rule needs positive max and delta, got {max_value}, {delta_value}')
    delta_theta = float(delta_value / max_value * DEG_SEMI)
    positive = [(val, i * delta_theta) for i, val in enumerate(drange(0, max_value, delta_value))]
    negative = [(-val, -theta) for (val, theta) in positive[1:-1]]
    outer_values = list(reversed(negative)) + positive
    outer = Scale(tuple(Tick(val, dec_str(val) if is_integral(val) else None, theta)
                        for (val, theta) in outer_values), key='relu')
    inner = tuple(Tick(max(val, Decimal(0)), dec_str(val) if is_integral(val) and val >= 0 else None, theta)
                  for (val, theta) in outer_values)
    # The inner dial repeats 0 across the whole negative half, so it is not a strictly increasing Scale.
    return outer, ClampedScale(inner, key='relu+')


@dataclass(frozen=True)
class ClampedScale(Scale):
    """Non-decreasing in value: a clamped reading of another scale's positions."""

    def __post_init__(self):
        if not self.ticks:
            raise InvalidRangeError(f'Scale {self.key or ""} has no ticks')
        for a, b in zip(self.ticks, self.ticks[1:]):
            if b.value < a.value:
                raise InvalidRangeError(f'Scale {self.key or ""} decreases at {a.value}, {b.value}')


# ----------------------4. Primitives----------------------------


class ArcSegment(NamedTuple):
    """Origin-centred arc from apparatus angle start to end (degrees, counter-clockwise)."""
    r: float
    start: float
    end: float


@dataclass(frozen=True)
class Line:
    x1: float
    y1: float
    x2: float
    y2: float
    classes: str = 'top etch'
    rotate: float = 0
    """SVG rotation about the board centre; rotate=-θ places the element at apparatus angle θ"""
    round_cap: bool = False


@dataclass(frozen=True)
class Path:
    arcs: tuple[ArcSegment, ...]
    classes: str = 'top etch'
    rotate: float = 0
    round_cap: bool = False


@dataclass(frozen=True)
class Text:
    text: str
    x: float
    y: float
    classes: str = 'top etch'
    rotate: float = 0
    anchor: str = 'middle'
    """start, middle or end"""
    baseline: str = 'middle'
    """auto or middle"""


@dataclass(frozen=True)
class Circle:
    r: float
    classes: str = 'top full'
    stroke_w: float = None
    cx: float = 0
    cy: float = 0


@dataclass(frozen=True)
class Group:
    children: tuple
    rotate: float = 0
    classes: str = None


Node = Union[Line, Path, Text, Circle, Group]


def walk(nodes):
    """All nodes of the tree, depth-first"""
    for node in nodes:
        yield node
        if isinstance(node, Group):
            yield from walk(node.children)


def nodes_with(nodes, classes: str):
    """Nodes carrying every class named"""
    wanted = set(classes.split())
    return [n for n in walk(nodes) if n.classes and wanted <= set(n.classes.split())]


# ----------------------5. Rings----------------------------


@dataclass(frozen=True)
class RenderContext:
    """Where the board put a ring: assigned once per layout pass."""
    outer_radius: float
    width: float
    layer_index: int

    @property
    def inner_radius(self):
        return self.outer_radius - self.width

    @property
    def mid_radius(self):
        return self.outer_radius - self.width / 2


def check_context(ring, ctx: RenderContext):
    if ctx is None:
        raise MissingContextError(f'cannot render {type(ring).__name__} without context')


@dataclass(frozen=True)
class RuleRing:
    """Fixed-width dial scale read against a neighbouring ring: outer labels above, inner below."""
    outer: Scale
    inner: Scale = None
    """defaults to the outer scale"""
    width: float = 30.0

    def __post_init__(self):
        if self.inner is None:
            object.__setattr__(self, 'inner', self.outer)
        if len(self.inner) != len(self.outer):
            raise InvalidRangeError(f'Rule ring scales differ in length: {len(self.outer)} vs {len(self.inner)}')
        for o, i in zip(self.outer, self.inner):
            if o.angle is None or o.angle != i.angle:
                raise InvalidRangeError(f'Rule ring ticks need shared angles, got {o.angle} and {i.angle}')

    @classmethod
    def log(cls, width=30.0):
        return cls(log_rule(), width=width)

    @classmethod
    def relu(cls, max_value=10, delta_value=0.25, width=30.0):
        outer, inner = relu_rule(max_value, delta_value)
        return cls(outer, inner, width=width)

    def render(self, ctx: RenderContext, g: Geometry = None) -> tuple:
        check_context(self, ctx)
        g = g or Geometry()
        r = ctx.mid_radius
        tick_len = g.rule_tick_len
        result = []
        for o, i in zip(self.outer, self.inner):
            line_class = 'top etch heavy' if o.is_major or i.is_major else 'top etch'
            children = [Line(0, r - tick_len, 0, r + tick_len, classes=line_class)]
            if o.label:
                children.append(Text(o.label, 0, r + 2.0 * tick_len, baseline='auto'))
            if i.label:
                children.append(Text(i.label, 0, r - 1.3 * tick_len, baseline='auto'))
            result.append(Group(tuple(children), rotate=-o.angle))
        result.append(Circle(r, classes='top full'))
        return tuple(result)


@dataclass(frozen=True)
class AzimuthalRing:
    """One curved slider per unit of a network layer, each reading the ring's scale."""
    scale: Scale
    sliders: int
    width: float = 10.0

    def __post_init__(self):
        if self.sliders < 1:
            raise InvalidRangeError(f'Azimuthal ring needs at least one slider, got {self.sliders}')

    def az_padding(self, r: float, theta_sweep: float, g: Geometry):
        """Angular gap at each end of a slider: a fixed arc length for labels, plus a share of the sector."""
        return arc_deg(g.label_gap, r) + theta_sweep / 36

    def check_fits(self, r: float, g: Geometry):
        """Each sector must leave room for its ticks between the two label gaps."""
        theta_sweep = DEG_FULL / self.sliders
        pad = self.az_padding(r, theta_sweep, g)
        if 2 * pad >= theta_sweep:
            raise LayoutOverflowError(
                f'AzimuthalRing with {self.sliders} sliders is too dense at radius {r:.1f}mm: '
                f'padding 2 x {pad:.3f}° leaves no room in a {theta_sweep:.3f}° sector')

    def render_slider(self, r: float, theta_sweep: float, number: int, layer_index: int, g: Geometry):
        sc = self.scale
        tick_len = g.az_tick_len
        pad = self.az_padding(r, theta_sweep, g)
        children = []
        first, last = sc.ticks[0], sc.ticks[-1]
        if first.label:
            children.append(Text(first.label, 0, r, rotate=-(0.7 * pad), anchor='end'))
        for tick in sc:
            theta = pad + (theta_sweep - 2 * pad) * sc.frac_pos_of(tick.value)
            children.append(Line(0, r - tick_len / 2, 0, r + tick_len / 2,
                                 classes='top etch heavy' if tick.is_major else 'top etch', rotate=-theta))
        if last.label:
            children.append(Text(last.label, 0, r, rotate=-(theta_sweep - 0.7 * pad), anchor='start'))
        children.append(Text(f'{layer_letter(layer_index)}{number + 1}', 0, r - tick_len,
                             classes='top etch indices', rotate=-0.5 * theta_sweep))
        overrun = arc_deg(g.slider_overrun, r)
        children.append(Path((ArcSegment(r, pad - overrun, theta_sweep - pad + overrun),),
                             classes='bottom slider', round_cap=True))
        children.append(Path((ArcSegment(r, pad, theta_sweep - pad),), classes='top slider', round_cap=True))
        return Group(tuple(children), rotate=-theta_sweep * number)

    def render(self, ctx: RenderContext, g: Geometry = None) -> tuple:
        check_context(self, ctx)
        g = g or Geometry()
        self.check_fits(ctx.mid_radius, g)
        theta_sweep = DEG_FULL / self.sliders
        return tuple(self.render_slider(ctx.mid_radius, theta_sweep, i, ctx.layer_index, g)
                     for i in range(self.sliders))


@dataclass(frozen=True)
class RadialRing:
    """
    A weight matrix: one angular group per downstream unit,
    one straight radial slider per upstream unit within each group.
    """
    scale: Scale
    groups: int
    sliders_per_group: int
    width: float = None
    """declared width; the board allocates the real one"""

    def __post_init__(self):
        if self.groups < 1 or self.sliders_per_group < 1:
            raise InvalidRangeError(f'Radial ring shape must be positive, got {self.shape}')

    @property
    def shape(self):
        return self.groups, self.sliders_per_group

    @property
    def slider_count(self):
        return self.groups * self.sliders_per_group

    def guide_r(self, value, r: float, width: float) -> float:
        """Minimum values sit at the outer edge."""
        return r - width * self.scale.frac_pos_of(value)

    def render_group(self, r: float, width: float, theta_sweep: float, group_index: int, layer_index: int,
                     g: Geometry):
        theta_offset = theta_sweep * group_index
        # n + 1 divisions keep sliders off the group boundaries
        slider_step = theta_sweep / (self.sliders_per_group + 1)
        result = []
        for i in range(1, self.sliders_per_group + 1):
            theta = theta_offset + i * slider_step
            for part in ('bottom', 'top'):
                result.append(Line(0, r, 0, r - width, classes=f'{part} slider', rotate=-theta, round_cap=True))
        result.append(Text(f'{layer_letter(layer_index)}{group_index + 1}', 0, r - width - g.index_offset,
                           classes='top etch indices', rotate=-(theta_offset + 0.5 * theta_sweep)))
        return result

    def render_guides(self, r: float, width: float, g: Geometry):
        theta_sweep = DEG_FULL / self.groups
        radii = [(tick.label, self.guide_r(tick.value, r, width)) for tick in self.scale]
        result = []
        for label, guide_r in radii:
            pad = arc_deg(g.label_gap, guide_r) if guide_r > E0 else 0.
            arcs = tuple(ArcSegment(guide_r, i * theta_sweep + pad, (i + 1) * theta_sweep - pad)
                         for i in range(self.groups))
            result.append(Path(arcs, classes='top etch heavy' if label else 'top etch'))
        labeled = [(label, guide_r) for label, guide_r in radii if label]
        for i in range(self.groups):
            texts = tuple(Text(label, 0, guide_r + 1) for label, guide_r in labeled)
            result.append(Group(texts, rotate=-(DEG_FULL * i / self.groups), classes='top etch'))
        return result

    def render(self, ctx: RenderContext, g: Geometry = None) -> tuple:
        check_context(self, ctx)
        g = g or Geometry()
        r = ctx.outer_radius - g.radial_margin
        width = max(ctx.width - 2 * g.radial_margin, 0.)
        theta_sweep = DEG_FULL / self.groups
        result = self.render_guides(r, width, g)
        for i in range(self.groups):
            result.extend(self.render_group(r, width, theta_sweep, i, ctx.layer_index, g))
        return tuple(result)


Ring = Union[RuleRing, AzimuthalRing, RadialRing]
RING_TYPES = (RuleRing, AzimuthalRing, RadialRing)


@dataclass(frozen=True)
class Network:
    n_input: int
    n_hidden: int
    n_output: int

    def __post_init__(self):
        for name in ('n_input', 'n_hidden', 'n_output'):
            if getattr(self, name) < 1:
                raise ApparatusError(f'{name} must be a positive unit count, got {getattr(self, name)}')

    @classmethod
    def from_dict(cls, network_def: dict):
        return cls(int(network_def['n_input']), int(network_def['n_hidden']), int(network_def['n_output']))


RuleArgs = tuple  # (start, stop, step, major_step)


@dataclass(frozen=True)
class RuleSet:
    """Scale parameters per ring role, as (start, stop, step, major_step)."""
    input: RuleArgs = (0, 1, 0.1, 0.5)
    weight: RuleArgs = (-10, 10, 2, 10)
    hidden: RuleArgs = (0, 10, 1, 5)
    output: RuleArgs = (0, 1, 0.1, 0.5)
    relu_max: float = 10
    relu_delta: float = 0.25

    @classmethod
    def from_dict(cls, rules_def: dict):
        rules_def = dict(rules_def)
        for key in ('input', 'weight', 'hidden', 'output'):
            if key in rules_def:
                if len(rules_def[key]) != 4:
                    raise ApparatusError(f'Rule {key} needs [start, stop, step, major_step], got {rules_def[key]}')
                rules_def[key] = tuple(rules_def[key])
        return cls(**rules_def)

    def rule_for(self, role: str) -> Scale:
        return linear_rule(*getattr(self, role), key=role)


def ring_sequence(network: Network, rules: RuleSet = None, g: Geometry = None, relu: bool = False) -> list:
    """
    The standard rings for a network, outermost first:
    log scale, (ReLU scale), input, input→hidden weights, hidden, hidden→output weights, output.
    """
    rules, g = rules or RuleSet(), g or Geometry()
    result = [RuleRing.log(width=g.rule_ring_w)]
    if relu:
        result.append(RuleRing.relu(rules.relu_max, rules.relu_delta, width=g.rule_ring_w))
    weight_rule = rules.rule_for('weight')
    result += [
        AzimuthalRing(rules.rule_for('input'), network.n_input, width=g.slider_ring_w),
        RadialRing(weight_rule, network.n_hidden, network.n_input, width=g.weight_ring_w),
        AzimuthalRing(rules.rule_for('hidden'), network.n_hidden, width=g.slider_ring_w),
        RadialRing(weight_rule, network.n_output, network.n_hidden, width=g.weight_ring_w),
        AzimuthalRing(rules.rule_for('output'), network.n_output, width=g.slider_ring_w),
    ]
    return result


# ----------------------6. Board Layout----------------------------


@dataclass(frozen=True)
class Placement:
    ring: Ring
    ctx: RenderContext
    channel: Circle = None
    """rotating void cut into the bottom plate in the gap below this ring"""


@dataclass(frozen=True)
class BoardLayout:
    placements: tuple[Placement, ...]
    fasteners: tuple[Circle, ...] = ()

    @property
    def widths(self):
        return [p.ctx.width for p in self.placements]

    @property
    def channels(self):
        return [p.channel for p in self.placements if p.channel is not None]


def add_fasteners(r: float, n: int, hole_r: float):
    """n evenly spaced holes at radius r"""
    result = []
    for i in range(n):
        x, y = polar(r, DEG_FULL * i / n)
        result.append(Circle(hole_r, classes='top full fastener', cx=x, cy=y))
    return tuple(result)


@dataclass(frozen=True)
class Board:
    rings: tuple
    geometry: Geometry = Geometry()
    style: Style = Style()

    @classmethod
    def for_network(cls, network: Network, g: Geometry = None, style: Style = None, rules: RuleSet = None,
                    relu: bool = False):
        g = g or Geometry()
        return cls(tuple(ring_sequence(network, rules, g, relu=relu)), g, style or Style())

    def validate(self):
        for ring in self.rings:
            if not isinstance(ring, RING_TYPES):
                raise ApparatusError(f'Unrecognized ring type: {type(ring).__name__}')

    def elastic_widths(self, available: float) -> list:
        elastic = [ring for ring in self.rings if isinstance(ring, RadialRing)]
        if not elastic:
            return []
        if self.geometry.width_policy == WidthPolicy.WEIGHTED:
            total = sum(ring.slider_count for ring in elastic)
            return [available * ring.slider_count / total for ring in elastic]
        return [available / len(elastic)] * len(elastic)

    def ring_widths(self) -> list:
        """Width per ring: declared for fixed rings, a share of what is left for weight rings."""
        self.validate()
        g = self.geometry
        n = len(self.rings)
        fixed = [ring for ring in self.rings if not isinstance(ring, RadialRing)]
        fixed_total = sum(ring.width for ring in fixed)
        room = g.radius - g.center_radius - g.radial_padding * n
        if fixed_total > room:
            widest = max(fixed, key=lambda ring: ring.width)
            raise LayoutOverflowError(
                f'Fixed ring widths total {fixed_total}mm but only {room:.1f}mm is available '
                f'(radius {g.radius}, centre {g.center_radius}, {n} rings with {g.radial_padding}mm padding); '
                f'widest is {type(widest).__name__} at {widest.width}mm')
        elastic_widths = iter(self.elastic_widths(max(room - fixed_total, 0.)))
        return [next(elastic_widths) if isinstance(ring, RadialRing) else ring.width for ring in self.rings]

    def layout(self) -> BoardLayout:
        g = self.geometry
        widths = self.ring_widths()
        placements, fasteners = [], []
        current_r = g.radius - g.radial_padding
        layer_index = 1
        last_i = len(self.rings) - 1
        for i, (ring, width) in enumerate(zip(self.rings, widths)):
            next_ring = self.rings[i + 1] if i < last_i else None
            gap_r = current_r - width - g.radial_padding / 2
            channel = None
            if isinstance(ring, RuleRing) and isinstance(next_ring, RuleRing):
                channel = Circle(gap_r, classes='bottom rotating', stroke_w=width + widths[i + 1] + 10)
            if isinstance(ring, AzimuthalRing) and isinstance(next_ring, RadialRing):
                fasteners.extend(add_fasteners(gap_r, g.ring_fasteners, g.fastener_r))
            ctx = RenderContext(current_r, width, layer_index)
            if isinstance(ring, AzimuthalRing):
                ring.check_fits(ctx.mid_radius, g)
            placements.append(Placement(ring, ctx, channel))
            current_r -= width + g.radial_padding
            if not isinstance(ring, RuleRing):  # scale rings are not network layers
                layer_index += 1
        fasteners.extend(add_fasteners(g.center_radius * 0.3, g.center_fasteners, g.fastener_r))
        return BoardLayout(tuple(placements), tuple(fasteners))

    def render(self) -> tuple:
        """The whole board as a primitive tree, ready to serialize."""
        g = self.geometry
        board_layout = self.layout()
        result = [Circle(g.radius, classes='top full', stroke_w=2)]
        for placement in board_layout.placements:
            ctx = placement.ctx
            result.append(Circle(ctx.outer_radius, classes='debug'))
            if placement.channel is not None:
                result.append(placement.channel)
            result.extend(placement.ring.render(ctx, g))
            result.append(Circle(ctx.inner_radius, classes='debug'))
        result.extend(board_layout.fasteners)
        return tuple(result)


# ----------------------7. Output----------------------------


class Out:
    """Drawing backend: walks a primitive tree."""

    def __init__(self, r, style: Style = None, hidden=()):
        self.r = r
        self.style = style or Style()
        self.hidden = frozenset(hidden or ())

    def add_all(self, nodes):
        for node in nodes:
            self.add(node)

    def add(self, node, rotate: float = 0): pass


class SVGOut(Out):
    r: svg.Drawing = None

    @classmethod
    def for_drawing(cls, d: svg.Drawing, style: Style = None, hidden=()):
        return cls(d, style, hidden)

    @staticmethod
    def transform_of(rotate: float):
        return f'rotate({rotate})' if rotate else None

    @staticmethod
    def path_d(arcs) -> str:
        p = svg.Path()
        for arc in arcs:
            x1, y1 = polar(arc.r, arc.start)
            x2, y2 = polar(arc.r, arc.end)
            p.M(x1, y1).A(arc.r, arc.r, 0, abs(arc.end - arc.start) > DEG_SEMI, False, x2, y2)
        return p.args['d']

    def element_for(self, node):
        if isinstance(node, Line):
            return svg.Line(node.x1, node.y1, node.x2, node.y2, class_=node.classes,
                            transform=self.transform_of(node.rotate),
                            stroke_linecap='round' if node.round_cap else None)
        elif isinstance(node, Path):
            return svg.Path(d=self.path_d(node.arcs), class_=node.classes,
                            transform=self.transform_of(node.rotate),
                            stroke_linecap='round' if node.round_cap else None)
        elif isinstance(node, Text):
            return svg.Text(node.text, self.style.font_size_for(node.classes), node.x, node.y,
                            class_=node.classes, transform=self.transform_of(node.rotate),
                            text_anchor=node.anchor, dominant_baseline=node.baseline)
        elif isinstance(node, Circle):
            return svg.Circle(node.cx, node.cy, node.r, class_=node.classes, stroke_width=node.stroke_w)
        elif isinstance(node, Group):
            group = svg.Group(class_=node.classes, transform=self.transform_of(node.rotate))
            for child in node.children:
                group.append(self.element_for(child))
            return group
        raise ValueError(f'Unrecognized primitive: {type(node).__name__}')

    def add(self, node, rotate: float = 0):
        self.r.append(self.element_for(node))

    def add_styles(self):
        self.r.append_css(self.style.css())
        for layer in CutLayer:
            if layer in self.hidden:
                self.r.append_css(f'{layer.value} {{ display: none; }}')


class RasterOut(Out):
    """Preview backend: draws the tree with Pillow, without the stylesheet."""
    r: ImageDraw.ImageDraw = None

    def __init__(self, r, style: Style = None, hidden=(), g: Geometry = None):
        super().__init__(r, style, hidden)
        self.g = g or Geometry()
        self.ppm = self.g.PixelsPerMM
        self.c = self.g.total_w * self.ppm / 2
        self.font = ImageFont.load_default()

    @classmethod
    def for_image(cls, i: Image.Image, style: Style = None, hidden=(), g: Geometry = None):
        return cls(ImageDraw.Draw(i), style, hidden, g)

    def is_visible(self, classes: str):
        if not classes:
            return True
        if 'debug' in classes.split():
            return DEBUG
        return not any(layer.matches(classes) for layer in self.hidden)

    def to_px(self, x: float, y: float, rotate: float):
        """Board mm to image pixels, applying an SVG-style clockwise rotation about the centre."""
        rad = math.radians(rotate)
        xr = x * math.cos(rad) - y * math.sin(rad)
        yr = x * math.sin(rad) + y * math.cos(rad)
        return self.c + xr * self.ppm, self.c + yr * self.ppm

    def stroke_px(self, classes: str, stroke_w: float = None):
        return max(1, round((stroke_w or self.style.stroke_w_for(classes)) * self.ppm))

    def draw_line(self, node: Line, rotate: float):
        col = Color.to_str(self.style.color_for(node.classes))
        self.r.line((self.to_px(node.x1, node.y1, rotate), self.to_px(node.x2, node.y2, rotate)),
                    fill=col, width=self.stroke_px(node.classes))

    def draw_path(self, node: Path, rotate: float):
        col = Color.to_str(self.style.color_for(node.classes))
        for arc in node.arcs:
            r_px = arc.r * self.ppm
            if r_px <= 0:
                continue
            # PIL measures clockwise from +x; apparatus angles run counter-clockwise from +y
            start = (DEG_RT - (arc.end - rotate)) % DEG_FULL
            end = start + (arc.end - arc.start)
            self.r.arc((self.c - r_px, self.c - r_px, self.c + r_px, self.c + r_px), start, end,
                       fill=col, width=self.stroke_px(node.classes))

    def draw_circle(self, node: Circle, rotate: float):
        col = Color.to_str(self.style.color_for(node.classes))
        xc, yc = self.to_px(node.cx, node.cy, rotate)
        r_px = node.r * self.ppm
        fill = Color.to_str(Color.WHITE) if 'fastener' in node.classes.split() else None
        self.r.ellipse((xc - r_px, yc - r_px, xc + r_px, yc + r_px), outline=col, fill=fill,
                       width=self.stroke_px(node.classes, node.stroke_w))

    def draw_text(self, node: Text, rotate: float):
        x, y = self.to_px(node.x, node.y, rotate)
        (x1, y1, x2, y2) = self.r.textbbox((0, 0), node.text, font=self.font)
        w, h = x2 - x1, y2 - y1
        if node.anchor == 'middle':
            x -= w / 2
        elif node.anchor == 'end':
            x -= w
        y -= h / 2 if node.baseline == 'middle' else h
        self.r.text((x, y), node.text, font=self.font, fill=Color.to_str(self.style.text_color))

    def add(self, node, rotate: float = 0):
        if not self.is_visible(node.classes):
            return
        if isinstance(node, Group):
            for child in node.children:
                self.add(child, rotate + node.rotate)
        elif isinstance(node, Line):
            self.draw_line(node, rotate + node.rotate)
        elif isinstance(node, Path):
            self.draw_path(node, rotate + node.rotate)
        elif isinstance(node, Text):
            self.draw_text(node, rotate + node.rotate)
        elif isinstance(node, Circle):
            self.draw_circle(node, rotate)
        else:
            raise ValueError(f'Unrecognized primitive: {type(node).__name__}')


def drawing_for(g: Geometry) -> svg.Drawing:
    x, y, w, h = g.view_box
    drawing = svg.Drawing(w, h, origin=(x, y), id_prefix='pa_')
    drawing.set_render_size(f'{w}mm', f'{h}mm')
    return drawing


def serialize(nodes, g: Geometry = None, style: Style = None, hidden=()) -> str:
    """
    SVG markup for a primitive tree, viewBox sized to the board plus its margin.
    Cut layers in hidden get a display:none rule, so every pass shares one geometry.
    """
    g = g or Geometry()
    style = style or Style()
    drawing = drawing_for(g)
    out = SVGOut.for_drawing(drawing, style, hidden)
    out.add_styles()
    if style.bg is not None:
        x, y, w, h = g.view_box
        drawing.append(svg.Rectangle(x, y, w, h, fill=Color.to_str(style.bg), stroke='none'))
    out.add_all(nodes)
    return drawing.as_svg()


def only_layer(layer: CutLayer):
    """Every other cut layer, for hiding"""
    return frozenset(other for other in CutLayer if other != layer)


def layer_documents(nodes, g: Geometry = None, style: Style = None) -> dict:
    """One SVG per cut layer, from one tree."""
    return {layer: serialize(nodes, g, style, hidden=only_layer(layer)) for layer in CutLayer}


def raster_preview(nodes, g: Geometry = None, style: Style = None, hidden=()) -> Image.Image:
    g = g or Geometry()
    style = style or Style()
    size_px = int(g.total_w * g.PixelsPerMM)
    bg = Color.to_str(style.bg) if style.bg is not None else Color.to_str(Color.WHITE)
    img = Image.new('RGB', (size_px, size_px), bg)
    RasterOut.for_image(img, style, hidden, g).add_all(nodes)
    return img


def save_image(img_to_save, basename: str, output_suffix=None):
    output_filename = f"{basename}{'.' + output_suffix if output_suffix else ''}"
    output_full_path = os.path.abspath(output_filename)
    os.makedirs(os.path.dirname(output_full_path), exist_ok=True)
    if isinstance(img_to_save, Image.Image):
        output_full_path += '.png'
        img_to_save.save(output_full_path, 'PNG')
    elif isinstance(img_to_save, str):
        output_full_path += '.svg'
        with open(output_full_path, 'w') as f:
            f.write(img_to_save)
    print(f'Result saved to: file://{output_full_path}')
    return output_full_path


# --------------------------8. Models----------------------------


@dataclass(frozen=True)
class Model:
    name: str
    network: Network
    subtitle: str = None
    geometry: Geometry = Geometry()
    style: Style = Style()
    rules: RuleSet = RuleSet()
    relu: bool = False
    """whether to add the ReLU scale ring after the log ring"""

    @classmethod
    def from_dict(cls, model_def: dict):
        return cls(name=model_def.get('name'), subtitle=model_def.get('subtitle'),
                   network=Network.from_dict(model_def['network']),
                   geometry=Geometry.from_dict(model_def.get('geometry', {})),
                   style=Style.from_dict(model_def.get('style', {})),
                   rules=RuleSet.from_dict(model_def.get('rules', {})),
                   relu=bool(model_def.get('relu', False)))

    @classmethod
    def from_toml_file(cls, toml_filename: str):
        return cls.from_dict(toml.load(toml_filename))

    example_dir_path = os.path.join(os.path.dirname(os.path.realpath(__file__)), 'examples')

    @classmethod
    def from_example(cls, example_name: str):
        return cls.from_toml_file(os.path.join(cls.example_dir_path, f'Board-{example_name}.toml'))

    @classmethod
    def load(cls, model_name):
        return cls.from_toml_file(model_name) if os.path.exists(model_name) else cls.from_example(model_name)

    @classmethod
    def example_names(cls):
        for fn in sorted(os.listdir(cls.example_dir_path)):
            if match := re.match(r'Board-(.*)\.toml$', fn):
                yield match.group(1)

    def board(self) -> Board:
        return Board.for_network(self.network, self.geometry, self.style, self.rules, relu=self.relu)


def render_board_mode(model: Model, out_format: OutFormat, hidden=()):
    nodes = model.board().render()
    if out_format == OutFormat.PNG:
        return raster_preview(nodes, model.geometry, model.style, hidden)
    return serialize(nodes, model.geometry, model.style, hidden)


def write_cnc_files(model: Model, out_dir: str, filename_prefix: str, output_suffix=None):
    """The full board, plus one file per cut layer for separate machine passes."""
    nodes = model.board().render()
    g, style = model.geometry, model.style
    paths = [save_image(serialize(nodes, g, style), os.path.join(out_dir, filename_prefix), output_suffix)]
    for layer, document in layer_documents(nodes, g, style).items():
        paths.append(save_image(document, os.path.join(out_dir, f'{filename_prefix}-{layer.file_suffix}'),
                                output_suffix))
    return paths


# ----------------------9. Commands------------------------------------------


def main():
    """CLI processor for rendering board models."""
    import argparse
    args_parser = argparse.ArgumentParser()
    args_parser.add_argument('--model',
                             choices=list(Model.example_names()),
                             default='Default',
                             help='Which board model')
    args_parser.add_argument('--size', type=float, help='Board diameter in mm')
    args_parser.add_argument('--input', type=int, help='Number of input units')
    args_parser.add_argument('--hidden', type=int, help='Number of hidden units')
    args_parser.add_argument('--output', type=int, help='Number of output units')
    args_parser.add_argument('--format',
                             default=OutFormat.SVG.value,
                             choices=[f.value for f in OutFormat],
                             help='Output format (SVG for CNC/laser tooling, PNG for preview)')
    args_parser.add_argument('--dir', default='svg', help='Output directory')
    args_parser.add_argument('--separate-layers',
                             action='store_true',
                             help='Also write one SVG per cut layer')
    args_parser.add_argument('--relu',
                             action='store_true',
                             help='Add the ReLU scale ring')
    args_parser.add_argument('--print',
                             action='store_true',
                             help='White on black, for printing')
    args_parser.add_argument('--suffix',
                             help='Output filename suffix for variations')
    args_parser.add_argument('--debug',
                             action='store_true',
                             help='Show ring bounds')
    cli_args = args_parser.parse_args()
    global DEBUG
    DEBUG = cli_args.debug
    out_format: OutFormat = next(f for f in OutFormat if f.value == cli_args.format)
    model_name = cli_args.model
    model = Model.load(model_name)
    net = model.network
    model = replace(model,
                    network=Network(cli_args.input or net.n_input, cli_args.hidden or net.n_hidden,
                                    cli_args.output or net.n_output),
                    geometry=replace(model.geometry, size=cli_args.size or model.geometry.size),
                    style=Styles.Print if cli_args.print else model.style,
                    relu=model.relu or cli_args.relu)
    net = model.network
    print(f'Building board: {model_name}')
    print(f' Size: {model.geometry.size}mm')
    print(f' Network: {net.n_input}-{net.n_hidden}-{net.n_output}')

    start_time = time.process_time()
    basename = os.path.join(cli_args.dir, f'{model_name}.Board')
    try:
        if out_format == OutFormat.SVG and cli_args.separate_layers:
            write_cnc_files(model, cli_args.dir, f'{model_name}.Board', cli_args.suffix)
        else:
            save_image(render_board_mode(model, out_format), basename, cli_args.suffix)
    except ApparatusError as e:
        print(f'Error building {model_name}: {e}')
        raise SystemExit(1)

    print(f'Program finished at: {round(time.process_time() - start_time, 3)} seconds')


if __name__ == '__main__':
    main()
