"""
Route table mapping (method, path pattern) pairs to handlers.

Patterns are split on "/" into segments. A segment is either a literal,
which must equal the request segment, or a template written ``{name}`` or
``:name``, which matches one non-empty segment and binds it by name:

    GET /users/me        literal, literal
    GET /users/{id}      literal, template

When several patterns match a path, the one with a literal at the leftmost
position where they differ wins, so ``/users/me`` beats ``/users/{id}`` and
``/a/{x}/c`` beats ``/{y}/b/c``.

Routes are registered before the server starts; the table is read without
locking afterwards, so the lifecycle controller refuses registration while
the server is running.
"""

import re
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Callable, Dict, List, Optional, Tuple, Union
from urllib.parse import unquote

from .errors import DuplicateRoute, MalformedRequest, NoRoute
from .models import Method, Request

# Handler: takes a Request and returns a Response, a Deferred, or an
# awaitable resolving to either
Handler = Callable[[Request], Any]

_TEMPLATE_RE = re.compile(r'^(?:\{([A-Za-z_][A-Za-z0-9_]*)\}|:([A-Za-z_][A-Za-z0-9_]*))$')


class SegmentKind(IntEnum):
    """Kinds of pattern segments, ordered by matching priority."""
    LITERAL = 0
    TEMPLATE = 1


def _split(path: str) -> List[str]:
    return path.split('/')[1:]


def compile_pattern(pattern: str) -> Tuple[Tuple[SegmentKind, str], ...]:
    """Split a route pattern into (kind, literal-or-name) segments.

    Raises:
        ValueError: If the pattern does not start with "/" or binds the
            same template name twice
    """
    if not pattern.startswith('/'):
        raise ValueError(f"Route pattern must start with '/': {pattern!r}")

    segments = []
    names = set()
    for part in _split(pattern):
        m = _TEMPLATE_RE.match(part)
        if m:
            name = m.group(1) or m.group(2)
            if name in names:
                raise ValueError(f"Duplicate template name {name!r} in {pattern!r}")
            names.add(name)
            segments.append((SegmentKind.TEMPLATE, name))
        else:
            segments.append((SegmentKind.LITERAL, part))
    return tuple(segments)


@dataclass(frozen=True)
class Route:
    """A registered route.

    Attributes:
        method: HTTP method the route answers
        pattern: Pattern as registered
        handler: Handler invoked for matching requests
    """
    method: Method
    pattern: str
    handler: Handler
    segments: Tuple[Tuple[SegmentKind, str], ...] = field(repr=False, compare=False, default=())

    @property
    def shape(self) -> Tuple[Optional[str], ...]:
        """Pattern identity with template names erased."""
        return tuple(value if kind is SegmentKind.LITERAL else None
                     for kind, value in self.segments)

    @property
    def rank(self) -> Tuple[SegmentKind, ...]:
        """Sort key: lower ranks win, compared left to right."""
        return tuple(kind for kind, _ in self.segments)

    def match(self, parts: List[str]) -> Optional[Dict[str, str]]:
        """Return bound template values if the path segments match."""
        if len(parts) != len(self.segments):
            return None
        params = {}
        for (kind, value), part in zip(self.segments, parts):
            if kind is SegmentKind.LITERAL:
                if part != value:
                    return None
            elif not part:
                return None
            else:
                params[value] = unquote(part)
        return params


@dataclass
class RouteMatch:
    """Result of a successful resolve: the route and its bound values."""
    route: Route
    params: Dict[str, str]


class RouteTable:
    """Registry of routes consulted for every incoming request.

    Example:
        table = RouteTable()

        @table.get("/ping")
        def ping(request):
            return Response.text("pong")
    """

    def __init__(self):
        self._routes: List[Route] = []

    def register(self, method: Union[str, Method], pattern: str, handler: Handler) -> Route:
        """Add a route.

        Raises:
            DuplicateRoute: If the same method and pattern shape exist
            ValueError: If the pattern or handler is invalid
        """
        if not callable(handler):
            raise ValueError(f"Handler for {pattern!r} is not callable")
        route = Route(Method.parse(method), pattern, handler, compile_pattern(pattern))
        for existing in self._routes:
            if existing.method is route.method and existing.shape == route.shape:
                raise DuplicateRoute(
                    f"{route.method} {pattern} conflicts with {existing.method} {existing.pattern}"
                )
        self._routes.append(route)
        return route

    def resolve(self, method: Union[str, Method], path: str) -> RouteMatch:
        """Find the best route for a request.

        HEAD requests fall back to GET routes when no HEAD route matches.

        Raises:
            NoRoute: If nothing matches; ``allowed`` lists the methods
                registered for the path when only the method differs
        """
        method = Method.parse(method)
        parts = _split(path)

        candidates: List[Tuple[Route, Dict[str, str]]] = []
        for route in self._routes:
            params = route.match(parts)
            if params is not None:
                candidates.append((route, params))

        if not candidates:
            raise NoRoute(str(method), path)

        by_method = [c for c in candidates if c[0].method is method]
        if not by_method and method is Method.HEAD:
            by_method = [c for c in candidates if c[0].method is Method.GET]

        if not by_method:
            allowed = {c[0].method.value for c in candidates}
            if Method.GET.value in allowed:
                allowed.add(Method.HEAD.value)
            raise NoRoute(str(method), path, allowed)

        route, params = min(by_method, key=lambda c: c[0].rank)
        return RouteMatch(route, params)

    def route(self, method: Union[str, Method], pattern: str) -> Callable[[Handler], Handler]:
        """Decorator form of register()."""
        def decorator(handler: Handler) -> Handler:
            self.register(method, pattern, handler)
            return handler
        return decorator

    def get(self, pattern: str) -> Callable[[Handler], Handler]:
        return self.route(Method.GET, pattern)

    def post(self, pattern: str) -> Callable[[Handler], Handler]:
        return self.route(Method.POST, pattern)

    def put(self, pattern: str) -> Callable[[Handler], Handler]:
        return self.route(Method.PUT, pattern)

    def delete(self, pattern: str) -> Callable[[Handler], Handler]:
        return self.route(Method.DELETE, pattern)

    def routes(self) -> List[Route]:
        """Registered routes in registration order."""
        return list(self._routes)

    def __len__(self) -> int:
        return len(self._routes)

    def __contains__(self, item: object) -> bool:
        if not isinstance(item, tuple) or len(item) != 2:
            return False
        method, pattern = item
        try:
            probe = Route(Method.parse(method), pattern, None, compile_pattern(pattern))
        except (ValueError, MalformedRequest):
            return False
        return any(r.method is probe.method and r.shape == probe.shape for r in self._routes)
