"""GPX text -> Route.

Uploaded GPX files are frequently malformed: undeclared extension prefixes,
stray control characters, repeated prologs, truncated leaf elements, several
concatenated documents. Parsing therefore runs in two stages:

1. a repair pass (`REPAIRS`) of pure text -> text fixes, and
2. a fallback chain (`STRATEGIES`) of text -> ParsedDocument strategies,
   tried in order until one succeeds.

The resulting document is reduced to raw point tuples and turned into an
immutable `Route` by `build_route`.
"""
from __future__ import annotations

import logging
import math
import re
import warnings
from dataclasses import dataclass
from datetime import datetime
from functools import partial
from typing import Callable, List, Mapping, Optional, Sequence, Tuple
from xml.etree import ElementTree

import gpxpy
from gpxpy.gpx import GPX, GPXException, GPXTrack, GPXTrackPoint, GPXTrackSegment

from routecast.backend import config
from routecast.backend.errors import ParseError, ProcessingLimitWarning, ValidationError
from routecast.backend.geodesy import haversine_km
from routecast.backend.models import Route, RoutePoint

log = logging.getLogger('pipeline.route.parser')

# (lat, lon, elevation, time) exactly as found in the document
RawPoint = Tuple[object, object, object, object]

SAMPLE_ROUTE_NAME = 'Sample Route (Amsterdam)'


@dataclass(frozen=True)
class ParsedDocument:
    gpx: GPX
    text: str  # text the document was parsed from; scanned for generic points
    strategy: str
    is_sample: bool = False


# -------------------- Repair pass --------------------

_CONTROL_CHARS = re.compile(r'[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]')
_PROLOG = re.compile(r'<\?xml[^>]*\?>')
_DOCTYPE = re.compile(r'<!DOCTYPE[^>\[]*(?:\[[^\]]*\])?\s*>', re.IGNORECASE)
_RELATIVE_XMLNS = re.compile(r'''(xmlns(?::[\w.-]+)?\s*=\s*)(["'])\s*//''')
_ROOT_TAG = re.compile(r'<([A-Za-z_][\w:.-]*)((?:\s[^<>]*?)?)(/?)>')
_ELEMENT_PREFIX = re.compile(r'</?([A-Za-z_][\w.-]*):[A-Za-z_]')
_ATTRIBUTE_PREFIX = re.compile(r'\s([A-Za-z_][\w.-]*):[A-Za-z_][\w.-]*\s*=')
_TRAILING_MARKUP = re.compile(r'<!--.*?-->|<\?.*?\?>', re.S)
_UNCLOSED_LEAF = re.compile(
    r'<([A-Za-z_][\w:.-]*)((?:\s[^<>]*)?)(?<!/)>([^<]*?\S)(\s*)(?=<(?![!?]|/\1\s*>))'
)


def strip_leading_junk(text: str) -> str:
    return text.lstrip('\ufeff \t\r\n')


def strip_control_chars(text: str) -> str:
    return _CONTROL_CHARS.sub('', text)


def normalize_prolog(text: str) -> str:
    """Keep only the first XML declaration (moved to the start) and drop DOCTYPEs."""
    text = _DOCTYPE.sub('', text)
    prologs = _PROLOG.findall(text)
    if not prologs:
        return text
    if len(prologs) > 1:
        log.info('[REPAIR] dropped %d duplicate XML declarations', len(prologs) - 1)
    body = _PROLOG.sub('', text).lstrip()
    return prologs[0] + '\n' + body


def fix_relative_namespace_uris(text: str) -> str:
    return _RELATIVE_XMLNS.sub(r'\1\2http://', text)


def collapse_roots(text: str) -> str:
    """Keep the first complete root element when several are concatenated."""
    m = _ROOT_TAG.search(text)
    if m is None:
        return text
    name = m.group(1)
    close = re.search(r'</%s\s*>' % re.escape(name), text[m.end():])
    if close is None:
        return text
    end = m.end() + close.end()
    rest = _TRAILING_MARKUP.sub('', text[end:])
    if not rest.strip():
        return text
    log.info('[REPAIR] dropped content after the first <%s> root element', name)
    return text[:end]


def inject_namespaces(text: str, namespaces: Mapping[str, str] = config.GPX_NAMESPACES) -> str:
    """Declare known prefixes that the document uses but never declares."""
    m = _ROOT_TAG.search(text)
    if m is None:
        return text
    name, attrs, slash = m.group(1), m.group(2), m.group(3)
    used = set(_ELEMENT_PREFIX.findall(text)) | set(_ATTRIBUTE_PREFIX.findall(text))
    missing = [
        p for p in sorted(used)
        if p in namespaces and not re.search(r'xmlns:%s\s*=' % re.escape(p), attrs)
    ]
    if not missing:
        return text
    log.info('[REPAIR] injecting namespace declarations: %s', ', '.join(missing))
    decls = ''.join(f' xmlns:{p}="{namespaces[p]}"' for p in missing)
    root = f'<{name}{attrs}{decls}{slash}>'
    return text[:m.start()] + root + text[m.end():]


def close_unterminated_leaves(text: str) -> str:
    return _UNCLOSED_LEAF.sub(r'<\1\2>\3</\1>\4', text)


# Table-independent repairs; inject_namespaces and close_unterminated_leaves
# run after these (see repair_document).
REPAIRS: Tuple[Callable[[str], str], ...] = (
    strip_leading_junk,
    strip_control_chars,
    normalize_prolog,
    fix_relative_namespace_uris,
    collapse_roots,
)


def repair_document(text: str, namespaces: Mapping[str, str] = config.GPX_NAMESPACES) -> str:
    """Apply every structural repair in order. Never raises for malformed input."""
    steps = REPAIRS + (partial(inject_namespaces, namespaces=namespaces), close_unterminated_leaves)
    for step in steps:
        text = step(text)
    return text


# -------------------- Fallback strategies --------------------

_XMLNS_PREFIXED_DECL = re.compile(r'''\s+xmlns:[\w.-]+\s*=\s*(["']).*?\1''', re.S)
_TAG_PREFIX = re.compile(r'<(/?)[A-Za-z_][\w.-]*:(?=[A-Za-z_])')
_ATTR_PREFIX = re.compile(r'(\s)[A-Za-z_][\w.-]*:(?=[A-Za-z_][\w.-]*\s*=\s*["\'])')
_LAT_ATTR = re.compile(r'''\blat\s*=\s*["']([^"']*)["']''')
_LON_ATTR = re.compile(r'''\blon\s*=\s*["']([^"']*)["']''')
_ELE_TEXT = re.compile(r'<(?:[\w.-]+:)?ele\s*>\s*([^<]*?)\s*<')
_TIME_TEXT = re.compile(r'<(?:[\w.-]+:)?time\s*>\s*([^<]*?)\s*<')
_NAME_TEXT = re.compile(r'<(?:[\w.-]+:)?name\s*>\s*([^<]*?)\s*</')
_AUTHOR_BLOCK = re.compile(r'<((?:[\w.-]+:)?(?:author|person))\b[^>]*>.*?</\1\s*>', re.S)
_POINT_TAGS = ('trkpt', 'rtept', 'wpt')


def strip_namespace_prefixes(text: str) -> str:
    """Remove prefixes from element and attribute names and drop prefixed declarations."""
    text = _XMLNS_PREFIXED_DECL.sub('', text)
    text = _TAG_PREFIX.sub(r'<\1', text)
    return _ATTR_PREFIX.sub(r'\1', text)


def _point_pattern(tag: str) -> re.Pattern:
    # content ends at the closing tag, or at the next point when the element is never closed
    opening = r'<(?:[\w.-]+:)?%s\b' % tag
    return re.compile(
        r'%s([^>]*?)(?:/>|>((?:(?!%s).)*?)(?:</(?:[\w.-]+:)?%s\s*>|(?=%s)|\Z))' % (opening, opening, tag, opening),
        re.S,
    )


_POINT_PATTERNS = tuple((tag, _point_pattern(tag)) for tag in _POINT_TAGS)


def extract_point_elements(text: str) -> List[RawPoint]:
    """Regex scan for trkpt, else rtept, else wpt elements carrying lat/lon."""
    for tag, pattern in _POINT_PATTERNS:
        points: List[RawPoint] = []
        for m in pattern.finditer(text):
            attrs, content = m.group(1), m.group(2) or ''
            lat = _LAT_ATTR.search(attrs)
            lon = _LON_ATTR.search(attrs)
            if lat is None or lon is None:
                continue
            ele = _ELE_TEXT.search(content)
            tm = _TIME_TEXT.search(content)
            points.append((
                lat.group(1),
                lon.group(1),
                ele.group(1) if ele else None,
                tm.group(1) if tm else None,
            ))
        if points:
            log.info('[PARSE] pattern scan found %d <%s> elements', len(points), tag)
            return points
    return []


def _generic_name(text: str) -> Optional[str]:
    """First <name> element text outside author/person blocks."""
    m = _NAME_TEXT.search(_AUTHOR_BLOCK.sub('', text))
    return m.group(1) if m else None


def _gpx_from_points(name: Optional[str], raw_points: Sequence[RawPoint]) -> GPX:
    gpx = GPX()
    gpx.name = name
    track = GPXTrack()
    gpx.tracks.append(track)
    segment = GPXTrackSegment()
    track.segments.append(segment)
    for lat, lon, ele, tm in raw_points:
        segment.points.append(GPXTrackPoint(
            latitude=_to_float(lat),
            longitude=_to_float(lon),
            elevation=_to_float(ele, None),
            time=_parse_time(tm),
        ))
    return gpx


def parse_structured(text: str) -> ParsedDocument:
    return ParsedDocument(gpxpy.parse(text), text, 'structured')


def parse_without_namespaces(text: str) -> ParsedDocument:
    stripped = strip_namespace_prefixes(text)
    return ParsedDocument(gpxpy.parse(stripped), stripped, 'strip_namespaces')


def parse_extracted_points(text: str) -> ParsedDocument:
    raw_points = extract_point_elements(text)
    if not raw_points:
        raise ParseError('no point-like elements found')
    gpx = _gpx_from_points(_generic_name(text), raw_points)
    return ParsedDocument(gpx, text, 'extract_points')


def sample_document(text: str = '') -> ParsedDocument:
    """Fixed 20-point loop (~5 km radius) around Amsterdam, one point every 5 minutes."""
    center_lat, center_lon, radius = 52.3676, 4.9041, 0.05
    raw_points: List[RawPoint] = []
    for i in range(20):
        angle = (i / 20) * math.pi * 2
        # elevation between 10 and 60 m
        raw_points.append((
            center_lat + math.sin(angle) * radius,
            center_lon + math.cos(angle) * radius,
            35.0 + math.sin(angle) * 25.0,
            None,
        ))
    gpx = _gpx_from_points(SAMPLE_ROUTE_NAME, raw_points)
    return ParsedDocument(gpx, text, 'sample_route', is_sample=True)


Strategy = Tuple[str, Callable[[str], ParsedDocument]]

STRATEGIES: Tuple[Strategy, ...] = (
    ('structured', parse_structured),
    ('strip_namespaces', parse_without_namespaces),
    ('extract_points', parse_extracted_points),
)
SAMPLE_STRATEGY: Strategy = ('sample_route', sample_document)


def run_strategies(text: str, strategies: Sequence[Strategy]) -> ParsedDocument:
    """Return the first strategy's document that parses; ParseError when none does."""
    failures = []
    for name, strategy in strategies:
        try:
            doc = strategy(text)
        except (GPXException, ValueError, ParseError) as e:
            log.info('[PARSE] strategy %s failed: %s', name, e)
            failures.append(f'{name}: {e}')
            continue
        if name != strategies[0][0]:
            log.warning('[PARSE] recovered with fallback strategy %s', name)
        return doc
    raise ParseError('Failed to parse GPX file (' + '; '.join(failures) + ')')


# -------------------- Document -> points / name --------------------

def _local_name(tag) -> str:
    if not isinstance(tag, str):
        return ''
    return tag.rsplit('}', 1)[-1].rsplit(':', 1)[-1]


def _element_tree(text: str) -> Optional[ElementTree.Element]:
    try:
        return ElementTree.fromstring(text)
    except ElementTree.ParseError:
        return None


def _element_point(el: ElementTree.Element) -> RawPoint:
    ele = tm = None
    for child in el:
        local = _local_name(child.tag)
        if local in ('ele', 'elevation') and ele is None:
            ele = child.text
        elif local == 'time' and tm is None:
            tm = child.text
    return (el.get('lat'), el.get('lon'), ele, tm)


def document_points(doc: ParsedDocument) -> Tuple[List[RawPoint], str]:
    """Ordered raw points with the fallback track/route -> waypoint -> generic -> any lat/lon."""
    gpx = doc.gpx
    points: List[RawPoint] = [
        (p.latitude, p.longitude, p.elevation, p.time)
        for track in gpx.tracks for seg in track.segments for p in seg.points
    ]
    points += [(p.latitude, p.longitude, p.elevation, p.time) for route in gpx.routes for p in route.points]
    if points:
        return points, 'track'

    points = [(p.latitude, p.longitude, p.elevation, p.time) for p in gpx.waypoints]
    if points:
        log.warning('[PARSE] no track/route points; using %d waypoints', len(points))
        return points, 'waypoint'

    root = _element_tree(doc.text)
    if root is None:
        return [], 'none'
    located = [el for el in root.iter() if el.get('lat') is not None and el.get('lon') is not None]
    generic = [el for el in located if _local_name(el.tag) in ('point', 'pt')]
    if generic:
        log.warning('[PARSE] using %d generic point elements', len(generic))
        return [_element_point(el) for el in generic], 'generic'
    if located:
        log.warning('[PARSE] using %d elements with lat/lon attributes', len(located))
        return [_element_point(el) for el in located], 'attributes'
    return [], 'none'


def extract_route_name(doc: ParsedDocument) -> str:
    gpx = doc.gpx
    candidates: List[Optional[str]] = [gpx.name]
    candidates += [t.name for t in gpx.tracks]
    candidates += [r.name for r in gpx.routes]
    candidates += [w.name for w in gpx.waypoints]
    candidates.append(_generic_name(doc.text))
    for name in candidates:
        if name and name.strip():
            return name.strip()
    return config.DEFAULT_ROUTE_NAME


# -------------------- Route construction --------------------

def _to_float(value, default: Optional[float] = 0.0) -> Optional[float]:
    if value is None:
        return default
    try:
        f = float(value) if isinstance(value, (int, float)) else float(str(value).strip())
    except (TypeError, ValueError):
        return default
    return f if math.isfinite(f) else default


def _parse_time(value) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    s = str(value).strip()
    if not s:
        return None
    if s.endswith(('Z', 'z')):
        s = s[:-1] + '+00:00'
    try:
        return datetime.fromisoformat(s)
    except ValueError:
        return None


def build_route(
    name: str,
    raw_points: Sequence[RawPoint],
    is_sample: bool = False,
    source: str = '',
    max_points: Optional[int] = None,
) -> Route:
    """Accumulate distance and elevation statistics over raw points, in order."""
    limit = config.MAX_ROUTE_POINTS if max_points is None else max_points
    if len(raw_points) > limit:
        msg = f'Route has {len(raw_points)} points; only the first {limit} are used'
        log.warning('[PARSE] %s', msg)
        warnings.warn(msg, ProcessingLimitWarning, stacklevel=2)
        raw_points = raw_points[:limit]

    points: List[RoutePoint] = []
    total_km = 0.0
    gain = 0.0
    loss = 0.0
    max_ele = -math.inf
    min_ele = math.inf
    prev: Optional[RoutePoint] = None
    for lat_raw, lon_raw, ele_raw, time_raw in raw_points:
        lat = _to_float(lat_raw)
        lon = _to_float(lon_raw)
        ele = _to_float(ele_raw)
        if prev is not None:
            total_km += haversine_km(prev.lat, prev.lon, lat, lon)
            diff = ele - prev.elevation_m
            if diff > 0:
                gain += diff
            elif diff < 0:
                loss -= diff
        max_ele = max(max_ele, ele)
        min_ele = min(min_ele, ele)
        prev = RoutePoint(lat, lon, ele, _parse_time(time_raw), total_km)
        points.append(prev)

    if not points:
        max_ele = min_ele = 0.0
    return Route(
        name=name,
        points=tuple(points),
        total_distance_km=total_km,
        elevation_gain_m=gain,
        elevation_loss_m=loss,
        max_elevation_m=max_ele,
        min_elevation_m=min_ele,
        is_sample=is_sample,
        source=source,
    )


def parse_route(
    raw_text,
    allow_sample: Optional[bool] = None,
    namespaces: Mapping[str, str] = config.GPX_NAMESPACES,
) -> Route:
    """Parse GPX text into a Route.

    Raises ValidationError for empty input and ParseError when no point can be
    recovered. With `allow_sample` (default: ROUTECAST_SAMPLE_FALLBACK) a fixed
    placeholder route flagged `is_sample` is returned instead of ParseError.
    """
    if isinstance(raw_text, bytes):
        raw_text = raw_text.decode('utf-8', errors='replace')
    if not isinstance(raw_text, str) or not raw_text.strip():
        raise ValidationError('Empty GPX file content')
    if allow_sample is None:
        allow_sample = config.sample_fallback_enabled()

    text = repair_document(raw_text, namespaces)
    strategies = STRATEGIES + (SAMPLE_STRATEGY,) if allow_sample else STRATEGIES
    doc = run_strategies(text, strategies)

    raw_points, kind = document_points(doc)
    if not raw_points:
        if not allow_sample:
            raise ParseError('No track points found in GPX file')
        log.warning('[PARSE] no points found; substituting sample route (degraded mode)')
        doc = sample_document(text)
        raw_points, kind = document_points(doc)

    name = extract_route_name(doc)
    route = build_route(name, raw_points, is_sample=doc.is_sample, source=doc.strategy)
    log.info(
        '[PARSE] route=%r points=%d (%s) distance=%.2fkm gain=%.0fm strategy=%s',
        route.name, len(route.points), kind, route.total_distance_km, route.elevation_gain_m, doc.strategy,
    )
    return route
