"""Deployment configuration.

Options are built in code or loaded from a YAML file:

    mode: direct              # or control-loop
    namespace: apps
    wait_for_ready: true
    timeout: 600
    rollback_on_failure: false
    continue_on_failure: true
    state_dir: .states
    retry:
      max_retries: 3
      backoff_multiplier: 2.0
      initial_delay: 1.0
      max_delay: 10.0
    readiness:
      poll_interval: 2.0
      timeout: 300

Resolution order for the config file:
1. $GRAPH_DRIVER_CONFIG environment variable
2. ./graph-driver.yaml in the working directory

Environment overrides applied last: $GRAPH_DRIVER_TIMEOUT, $GRAPH_DRIVER_NAMESPACE.
"""

import dataclasses
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional

import yaml

MODES = ('direct', 'control-loop')
DEFAULT_CONFIG_NAME = 'graph-driver.yaml'


class ConfigError(Exception):
    """Configuration error."""


def _number(data: dict, key: str, default: float, minimum: float = 0.0) -> float:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"'{key}' must be a number, got {value!r}")
    if value < minimum:
        raise ConfigError(f"'{key}' must be >= {minimum}, got {value}")
    return value


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff for transient apply failures.

    Attributes:
        max_retries: Retries after the first attempt (0 disables retry)
        backoff_multiplier: Growth factor between consecutive delays
        initial_delay: Delay in seconds before the first retry
        max_delay: Upper bound for any single delay
    """
    max_retries: int = 3
    backoff_multiplier: float = 2.0
    initial_delay: float = 1.0
    max_delay: float = 10.0

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number `attempt` (0-based)."""
        return min(self.initial_delay * (self.backoff_multiplier ** attempt), self.max_delay)

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> 'RetryPolicy':
        data = data or {}
        max_retries = data.get('max_retries', 3)
        if isinstance(max_retries, bool) or not isinstance(max_retries, int) or max_retries < 0:
            raise ConfigError(f"'max_retries' must be a non-negative integer, got {max_retries!r}")
        return cls(
            max_retries=max_retries,
            backoff_multiplier=_number(data, 'backoff_multiplier', 2.0, minimum=1.0),
            initial_delay=_number(data, 'initial_delay', 1.0),
            max_delay=_number(data, 'max_delay', 10.0),
        )

    def to_dict(self) -> dict:
        return dataclasses.asdict(self)


@dataclass(frozen=True)
class ReadinessConfig:
    """Readiness polling bounds, separate from the overall deploy timeout."""
    poll_interval: float = 2.0
    timeout: float = 300.0

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> 'ReadinessConfig':
        data = data or {}
        poll_interval = _number(data, 'poll_interval', 2.0)
        if poll_interval <= 0:
            raise ConfigError("'poll_interval' must be greater than 0")
        return cls(poll_interval=poll_interval, timeout=_number(data, 'timeout', 300.0))

    def to_dict(self) -> dict:
        return dataclasses.asdict(self)


@dataclass
class DeployOptions:
    """Options for a single deploy call.

    Attributes:
        mode: 'direct' applies resources itself; 'control-loop' hands the
            compiled graph to the in-cluster controller
        wait_for_ready: Poll readiness before dependents proceed
        timeout: Overall deploy timeout in seconds (None for no limit)
        retry: Backoff policy for transient apply failures
        readiness: Readiness polling interval and timeout
        rollback_on_failure: Delete applied resources when the deploy fails
        continue_on_failure: Keep deploying later levels after a failure
        namespace: Default namespace for namespaced resources
        state_dir: Directory for JSON deployment records (None disables)
        progress_callback: Called with each DeploymentEvent
    """
    mode: str = 'direct'
    wait_for_ready: bool = True
    timeout: Optional[float] = None
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    readiness: ReadinessConfig = field(default_factory=ReadinessConfig)
    rollback_on_failure: bool = False
    continue_on_failure: bool = True
    namespace: str = 'default'
    state_dir: Optional[Path] = None
    progress_callback: Optional[Callable[[Any], None]] = field(default=None, repr=False, compare=False)

    def __post_init__(self):
        if self.mode not in MODES:
            raise ConfigError(f"Unknown deploy mode '{self.mode}'. Valid: {', '.join(MODES)}")
        if self.timeout is not None and self.timeout <= 0:
            raise ConfigError(f"'timeout' must be greater than 0, got {self.timeout}")
        if self.state_dir is not None and not isinstance(self.state_dir, Path):
            self.state_dir = Path(self.state_dir)

    @classmethod
    def from_dict(cls, data: dict) -> 'DeployOptions':
        """Build options from a parsed config mapping.

        Raises:
            ConfigError: On unknown keys or invalid values
        """
        if not isinstance(data, dict):
            raise ConfigError(f"Deploy options must be a mapping, got {type(data).__name__}")
        known = {f.name for f in dataclasses.fields(cls)} - {'progress_callback'}
        unknown = set(data) - known
        if unknown:
            raise ConfigError(f"Unknown deploy option(s): {', '.join(sorted(unknown))}")

        timeout = data.get('timeout')
        if timeout is not None and (isinstance(timeout, bool) or not isinstance(timeout, (int, float))):
            raise ConfigError(f"'timeout' must be a number, got {timeout!r}")

        state_dir = data.get('state_dir')
        return cls(
            mode=data.get('mode', 'direct'),
            wait_for_ready=bool(data.get('wait_for_ready', True)),
            timeout=timeout,
            retry=RetryPolicy.from_dict(data.get('retry')),
            readiness=ReadinessConfig.from_dict(data.get('readiness')),
            rollback_on_failure=bool(data.get('rollback_on_failure', False)),
            continue_on_failure=bool(data.get('continue_on_failure', True)),
            namespace=str(data.get('namespace', 'default')),
            state_dir=Path(state_dir) if state_dir else None,
        )

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'mode': self.mode,
            'wait_for_ready': self.wait_for_ready,
            'rollback_on_failure': self.rollback_on_failure,
            'continue_on_failure': self.continue_on_failure,
            'namespace': self.namespace,
            'retry': self.retry.to_dict(),
            'readiness': self.readiness.to_dict(),
        }
        if self.timeout is not None:
            d['timeout'] = self.timeout
        if self.state_dir is not None:
            d['state_dir'] = str(self.state_dir)
        return d


def _parse_yaml(path: Path) -> dict:
    """Parse a YAML file and return contents."""
    try:
        with open(path, encoding="utf-8") as f:
            return yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    except OSError as e:
        raise ConfigError(f"Cannot read {path}: {e}") from e


def discover_config_path() -> Optional[Path]:
    """Find the deploy config file.

    Resolution order:
    1. $GRAPH_DRIVER_CONFIG environment variable
    2. ./graph-driver.yaml
    """
    if env_path := os.environ.get('GRAPH_DRIVER_CONFIG'):
        path = Path(env_path)
        if path.exists():
            return path
        raise ConfigError(f"GRAPH_DRIVER_CONFIG={env_path} does not exist")

    local = Path.cwd() / DEFAULT_CONFIG_NAME
    if local.exists():
        return local
    return None


def apply_env_overrides(options: DeployOptions) -> DeployOptions:
    """Apply $GRAPH_DRIVER_TIMEOUT and $GRAPH_DRIVER_NAMESPACE."""
    changes: dict[str, Any] = {}
    if timeout := os.environ.get('GRAPH_DRIVER_TIMEOUT'):
        try:
            changes['timeout'] = float(timeout)
        except ValueError as e:
            raise ConfigError(f"GRAPH_DRIVER_TIMEOUT must be a number, got '{timeout}'") from e
    if namespace := os.environ.get('GRAPH_DRIVER_NAMESPACE'):
        changes['namespace'] = namespace
    if not changes:
        return options
    return dataclasses.replace(options, **changes)


def load_options(path: Optional[Path] = None) -> DeployOptions:
    """Load deploy options from YAML, falling back to defaults.

    Args:
        path: Explicit config file; discovered when omitted

    Raises:
        ConfigError: If the file is unreadable or invalid
    """
    if path is None:
        path = discover_config_path()
    if path is None:
        return apply_env_overrides(DeployOptions())

    data = _parse_yaml(Path(path))
    if 'deploy' in data and isinstance(data['deploy'], dict):
        data = data['deploy']
    return apply_env_overrides(DeployOptions.from_dict(data))
