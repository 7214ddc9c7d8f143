"""Common errors, field-path helpers, and logging setup for graph-driver."""

import logging
import re
from typing import Any, Optional, Union

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s [%(levelname)s] %(message)s'
LOG_DATEFMT = '%Y-%m-%d %H:%M:%S'

PathSegment = Union[str, int]

_IDENT_RE = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*$')
_MISSING = object()


class GraphDriverError(Exception):
    """Base class for all graph-driver errors."""


class ConstructionError(GraphDriverError):
    """Graph construction failed (cycle, unsupported syntax, disallowed field).

    Raised synchronously while a graph is being assembled or built.
    Never retried.
    """


class CircularDependencyError(ConstructionError):
    """Resources reference each other in a cycle."""

    def __init__(self, cycle: list[str]):
        self.cycle = list(cycle)
        super().__init__(f"Circular dependency detected: {' -> '.join(self.cycle)}")


class ExpressionSyntaxError(ConstructionError):
    """Expression text could not be parsed."""

    def __init__(self, message: str, source: str = '', position: Optional[int] = None):
        self.source = source
        self.position = position
        detail = message
        if position is not None:
            detail = f"{message} at position {position}"
        if source:
            detail = f"{detail} in '{source}'"
        super().__init__(detail)


class CompileError(GraphDriverError):
    """Expression cannot be represented in the target syntax."""

    def __init__(self, message: str, expression: str = ''):
        self.expression = expression
        super().__init__(message)


class ApiError(GraphDriverError):
    """Error returned by the cluster API.

    A missing status_code means the request never got a response
    (connection refused, DNS failure, timeout).
    """

    def __init__(self, message: str, status_code: Optional[int] = None, body: Optional[dict] = None):
        self.status_code = status_code
        self.body = body or {}
        super().__init__(message)

    @property
    def transient(self) -> bool:
        return is_transient_status(self.status_code)

    @property
    def not_found(self) -> bool:
        return self.status_code == 404


class ApplyError(GraphDriverError):
    """Applying a resource to the cluster failed.

    Attributes:
        resource_id: Graph id of the resource being applied
        transient: True when the failure was retryable
        status_code: HTTP status code from the cluster API, if any
    """

    def __init__(
        self,
        message: str,
        resource_id: Optional[str] = None,
        transient: bool = False,
        status_code: Optional[int] = None,
    ):
        self.resource_id = resource_id
        self.transient = transient
        self.status_code = status_code
        super().__init__(message)


class UnresolvedReferenceError(ApplyError):
    """A reference could not be resolved against live cluster state."""

    def __init__(self, message: str, resource_id: Optional[str] = None, field_path: str = ''):
        self.field_path = field_path
        super().__init__(message, resource_id=resource_id, transient=False)


class EvaluationError(ApplyError):
    """An expression failed to evaluate at apply time."""


class ReadinessTimeoutError(GraphDriverError):
    """Readiness polling exceeded its bound; carries the last verdict message."""

    def __init__(self, resource_id: str, timeout: float, last_message: str = ''):
        self.resource_id = resource_id
        self.timeout = timeout
        self.last_message = last_message
        msg = f"Resource '{resource_id}' not ready after {timeout}s"
        if last_message:
            msg = f"{msg}: {last_message}"
        super().__init__(msg)


class DependencyFailedError(GraphDriverError):
    """Synthetic error for a resource whose dependency failed."""

    def __init__(self, resource_id: str, failed_dependencies: list[str]):
        self.resource_id = resource_id
        self.failed_dependencies = sorted(failed_dependencies)
        super().__init__(
            f"Resource '{resource_id}' skipped: dependency failed "
            f"({', '.join(self.failed_dependencies)})"
        )


class DeploymentTimeoutError(GraphDriverError):
    """The overall deploy timeout elapsed."""

    def __init__(self, timeout: float):
        self.timeout = timeout
        super().__init__(f"Deployment timed out after {timeout}s")


def is_transient_status(status_code: Optional[int]) -> bool:
    """Return True for responses worth retrying.

    No response (network failure), 408, 429 and any 5xx are transient.
    Every other 4xx is a validation failure.
    """
    if status_code is None:
        return True
    return status_code in (408, 429) or status_code >= 500


def split_path(path: str) -> list[PathSegment]:
    """Split a field path into segments.

    Supports dotted names, numeric indices and quoted keys:
    ``status.loadBalancer.ingress[0].ip`` or
    ``metadata.labels["app.kubernetes.io/name"]``.

    Raises:
        ValueError: If the path is malformed
    """
    segments: list[PathSegment] = []
    buf = ''
    i = 0
    n = len(path)
    while i < n:
        ch = path[i]
        if ch == '.':
            if buf:
                segments.append(buf)
                buf = ''
            i += 1
        elif ch == '[':
            if buf:
                segments.append(buf)
                buf = ''
            if i + 1 < n and path[i + 1] in ('"', "'"):
                quote = path[i + 1]
                close = path.find(quote, i + 2)
                if close == -1 or close + 1 >= n or path[close + 1] != ']':
                    raise ValueError(f"Unterminated key in path: {path}")
                segments.append(path[i + 2:close])
                i = close + 2
            else:
                close = path.find(']', i)
                if close == -1:
                    raise ValueError(f"Unterminated index in path: {path}")
                token = path[i + 1:close].strip()
                if not token:
                    raise ValueError(f"Empty index in path: {path}")
                segments.append(int(token) if token.lstrip('-').isdigit() else token)
                i = close + 1
        else:
            buf += ch
            i += 1
    if buf:
        segments.append(buf)
    return segments


def join_path(segments: list[PathSegment]) -> str:
    """Join path segments back into dotted/bracketed form."""
    out = ''
    for seg in segments:
        if isinstance(seg, int):
            out += f'[{seg}]'
        elif _IDENT_RE.match(seg):
            out += f'.{seg}' if out else seg
        else:
            escaped = seg.replace('\\', '\\\\').replace('"', '\\"')
            out += f'["{escaped}"]'
    return out


def is_identifier(name: str) -> bool:
    return bool(_IDENT_RE.match(name))


def get_path(obj: Any, path: Union[str, list[PathSegment]], default: Any = _MISSING) -> Any:
    """Look up a field path in nested dicts/lists.

    Raises:
        KeyError: If the path is absent and no default was given
    """
    segments = split_path(path) if isinstance(path, str) else path
    current = obj
    for seg in segments:
        if isinstance(current, dict) and seg in current:
            current = current[seg]
        elif isinstance(current, list) and isinstance(seg, int) and -len(current) <= seg < len(current):
            current = current[seg]
        else:
            if default is _MISSING:
                raise KeyError(path if isinstance(path, str) else join_path(path))
            return default
    return current


def to_kebab_case(name: str) -> str:
    """Convert 'MyWebApp' or 'my_web app' to 'my-web-app'."""
    s = re.sub(r'([a-z0-9])([A-Z])', r'\1-\2', name)
    s = re.sub(r'[^A-Za-z0-9]+', '-', s)
    return s.strip('-').lower()


def to_pascal_case(name: str) -> str:
    """Convert 'my-web-app' to 'MyWebApp'."""
    parts = re.split(r'[^A-Za-z0-9]+', name)
    return ''.join(p[:1].upper() + p[1:] for p in parts if p)


def configure_logging(verbose: bool = False) -> None:
    """Set up root logging with the standard format."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
        datefmt=LOG_DATEFMT,
    )
