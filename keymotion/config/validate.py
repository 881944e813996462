from typing import Any, Dict

from ..exceptions import ValidationError


def _section(config: Dict[str, Any], name: str) -> Dict[str, Any]:
    section = config.get(name, {})
    if section is None:
        return {}
    if not isinstance(section, dict):
        raise ValidationError(f"'{name}' must be a mapping.")
    return section


def _require_str(cfg: Dict[str, Any], key: str, path: str) -> None:
    value = cfg.get(key)
    if value is not None and (not isinstance(value, str) or not value.strip()):
        raise ValidationError(f"{path}.{key} must be a non-empty string.")


def _require_number(
    cfg: Dict[str, Any], key: str, path: str, *, minimum: float = 0, allow_equal: bool = True, integer: bool = False
) -> None:
    value = cfg.get(key)
    if value is None:
        return
    types = (int,) if integer else (int, float)
    if isinstance(value, bool) or not isinstance(value, types):
        kind = "an integer" if integer else "a number"
        raise ValidationError(f"{path}.{key} must be {kind}.")
    if value < minimum or (not allow_equal and value == minimum):
        op = ">=" if allow_equal else ">"
        raise ValidationError(f"{path}.{key} must be {op} {minimum}.")


def _require_bool(cfg: Dict[str, Any], key: str, path: str) -> None:
    value = cfg.get(key)
    if value is not None and not isinstance(value, bool):
        raise ValidationError(f"{path}.{key} must be true or false.")


def _validate_system(cfg: Dict[str, Any]) -> None:
    _require_str(cfg, "scratch_dir", "system")
    _require_str(cfg, "output_dir", "system")
    _require_bool(cfg, "queue_when_busy", "system")
    _require_bool(cfg, "keep_failed_artifacts", "system")

    limit = cfg.get("max_concurrent_encodes")
    if limit is None or (isinstance(limit, str) and limit.lower() == "auto"):
        return
    if isinstance(limit, bool) or not isinstance(limit, int) or limit < 1:
        raise ValidationError(
            "system.max_concurrent_encodes must be 'auto' or an integer >= 1."
        )


def _validate_download(cfg: Dict[str, Any]) -> None:
    _require_number(cfg, "timeout_sec", "download", allow_equal=False)
    _require_number(cfg, "max_redirects", "download", integer=True)
    _require_number(cfg, "chunk_size", "download", allow_equal=False, integer=True)
    _require_number(cfg, "retries", "download", integer=True)
    _require_number(cfg, "retry_backoff_sec", "download")

    hosts = cfg.get("rewrite_hosts")
    if hosts is not None:
        if not isinstance(hosts, list) or not all(isinstance(h, str) and h for h in hosts):
            raise ValidationError("download.rewrite_hosts must be a list of host names.")


def _validate_encode(cfg: Dict[str, Any]) -> None:
    _require_str(cfg, "ffmpeg_path", "encode")
    _require_str(cfg, "ffprobe_path", "encode")
    _require_number(cfg, "timeout_sec", "encode")
    _require_bool(cfg, "progress_bar", "encode")


def validate_config(config: Dict[str, Any]) -> None:
    """Validate the merged configuration, raising ``ValidationError`` on the first problem."""
    if not isinstance(config, dict):
        raise ValidationError("Configuration root must be a mapping.")

    known = {"system", "download", "encode"}
    unknown = sorted(set(config) - known)
    if unknown:
        raise ValidationError(f"Unknown configuration section(s): {', '.join(unknown)}")

    _validate_system(_section(config, "system"))
    _validate_download(_section(config, "download"))
    _validate_encode(_section(config, "encode"))
