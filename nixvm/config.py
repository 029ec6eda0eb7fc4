"""Configuration loading and validation for nixvm."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from nixvm.constants import (
    CONFIG_FILE_KEYS,
    DEFAULT_CONFIG_PATH,
    DEFAULT_CORES,
    DEFAULT_DISK_SIZE,
    DEFAULT_MEMORY_MB,
    DEFAULT_STATE_DIR,
    MIN_CORES,
    MIN_MEMORY_MB,
)
from nixvm.exceptions import (
    ConfigError,
    ConfigFileError,
    ImageNotFoundError,
    InsufficientMemoryError,
    InvalidCoreCountError,
    StateDirectoryError,
)
from nixvm.models import VMConfig
from nixvm.utils import ensure_directory, get_env, log, parse_disk_size

# Names a build output uses for each boot artifact.
_ARTIFACT_NAMES = {
    "kernel": {"kernel", "bzImage", "Image", "vmlinuz"},
    "initrd": {"initrd", "initrd.img", "initramfs"},
}


def resolve_config_path(explicit: Optional[str] = None) -> Path:
    if explicit:
        return Path(explicit).expanduser()
    env_path = get_env("NIXVM_CONFIG")
    if env_path:
        return Path(env_path).expanduser()
    return DEFAULT_CONFIG_PATH


def load_config_file(config_path: Path, required: bool = False) -> Dict[str, Any]:
    """Read start defaults from a YAML mapping; a missing optional file is empty."""
    if not config_path.exists():
        if required:
            raise ConfigFileError(f"Config file missing: {config_path}")
        return {}
    try:
        data = yaml.safe_load(config_path.read_text())
    except yaml.YAMLError as exc:
        raise ConfigFileError(f"Config file {config_path} contains invalid YAML: {exc}") from exc
    except OSError as exc:
        raise ConfigFileError(f"Cannot read config file {config_path}: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigFileError(f"Config file {config_path} must contain a YAML mapping, got {type(data).__name__}")
    unknown = sorted(set(data) - CONFIG_FILE_KEYS)
    if unknown:
        log("WARN", f"Ignoring unknown keys in {config_path}: {', '.join(unknown)}")
    return {key: value for key, value in data.items() if key in CONFIG_FILE_KEYS}


def _pick(cli_value: Any, file_values: Dict[str, Any], key: str, default: Any) -> Any:
    if cli_value is not None:
        return cli_value
    value = file_values.get(key)
    return default if value is None else value


def _as_int(value: Any, name: str) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"{name} must be an integer (got '{value}')")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{name} must be an integer (got '{value}')")


def _as_path(value: Any) -> Path:
    return Path(str(value)).expanduser().resolve()


def build_config(
    *,
    kernel: Optional[str] = None,
    initrd: Optional[str] = None,
    system: Optional[str] = None,
    cores: Optional[int] = None,
    memory: Optional[int] = None,
    disk_size: Optional[str] = None,
    state_dir: Optional[str] = None,
    rosetta: Optional[bool] = None,
    require_rosetta: Optional[bool] = None,
    share_nix_store: Optional[bool] = None,
    idle_timeout: Optional[int] = None,
    file_values: Optional[Dict[str, Any]] = None,
) -> VMConfig:
    """Merge CLI values over config-file values over defaults.

    Image paths are resolved through symlinks here so that the running
    instance keeps booting the same store path even if a profile link moves.
    """
    values = file_values or {}
    kernel_raw = _pick(kernel, values, "kernel", None)
    initrd_raw = _pick(initrd, values, "initrd", None)
    if kernel_raw is None:
        raise ConfigError("A kernel image is required (--kernel or 'kernel' in the config file)")
    if initrd_raw is None:
        raise ConfigError("An initrd image is required (--initrd or 'initrd' in the config file)")
    system_raw = _pick(system, values, "system", None)
    state_raw = _pick(state_dir, values, "state_dir", None)

    return VMConfig(
        kernel=_as_path(kernel_raw),
        initrd=_as_path(initrd_raw),
        system=_as_path(system_raw) if system_raw else None,
        cores=_as_int(_pick(cores, values, "cores", DEFAULT_CORES), "cores"),
        memory_mb=_as_int(_pick(memory, values, "memory", DEFAULT_MEMORY_MB), "memory"),
        disk_size=str(_pick(disk_size, values, "disk_size", DEFAULT_DISK_SIZE)),
        state_dir=Path(str(state_raw)).expanduser() if state_raw else DEFAULT_STATE_DIR,
        rosetta=bool(_pick(rosetta, values, "rosetta", True)),
        rosetta_required=bool(_pick(require_rosetta, values, "require_rosetta", False)),
        share_nix_store=bool(_pick(share_nix_store, values, "share_nix_store", True)),
        idle_timeout=_as_int(_pick(idle_timeout, values, "idle_timeout", 0), "idle_timeout"),
    )


def _swap_hint(missing: Path, expected: str) -> Optional[str]:
    """Suggest swapped flags when the directory holds the other artifact."""
    other = "initrd" if expected == "kernel" else "kernel"
    parent = missing.parent
    try:
        names = {entry.name for entry in parent.iterdir()}
    except OSError:
        return None
    if names & _ARTIFACT_NAMES[expected]:
        return None
    if names & _ARTIFACT_NAMES[other]:
        return (
            f"{parent} contains a {other} image but no {expected}; "
            f"did you swap the --kernel and --initrd build outputs?"
        )
    return None


def validate(cfg: VMConfig) -> None:
    if cfg.cores < MIN_CORES:
        raise InvalidCoreCountError(cfg.cores)
    if cfg.memory_mb < MIN_MEMORY_MB:
        raise InsufficientMemoryError(cfg.memory_mb)
    if not cfg.kernel.exists():
        raise ImageNotFoundError("kernel", cfg.kernel, _swap_hint(cfg.kernel, "kernel"))
    if not cfg.initrd.exists():
        raise ImageNotFoundError("initrd", cfg.initrd, _swap_hint(cfg.initrd, "initrd"))
    parse_disk_size(cfg.disk_size)
    if cfg.idle_timeout < 0:
        raise ConfigError(f"Idle timeout must be >= 0 minutes (got {cfg.idle_timeout})")


def ensure_state_directory(cfg: VMConfig) -> None:
    try:
        ensure_directory(cfg.state_dir, mode=0o700)
    except OSError as exc:
        raise StateDirectoryError(f"Failed to create state directory at: {cfg.state_dir}: {exc}") from exc
