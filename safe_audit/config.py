# safe_audit/config.py
"""
Centralized configuration management.

Handles loading defaults, merging in settings from pyproject.toml,
applying environment overrides, and applying runtime overrides.
"""
from __future__ import annotations

import copy
import logging
import os
from pathlib import Path
from typing import Any, Mapping, MutableMapping

try:
    import tomli
except ImportError:
    tomli = None  # type: ignore

log = logging.getLogger(__name__)

USER_AGENT = "Mozilla/5.0 (compatible; SafeAudit/0.1; +https://example.invalid/bot)"

# Response headers that are safe to hand to analyzers. Anything else
# (proxy chains, internal ids, cookies) is dropped at the fetch boundary.
DEFAULT_CURATED_HEADERS = [
    "content-type",
    "content-length",
    "cache-control",
    "server",
    "x-powered-by",
    "x-generator",
    "x-vercel-id",
    "x-nextjs-cache",
    "x-nf-request-id",
    "cf-ray",
    "cf-cache-status",
    "via",
    "x-served-by",
    "x-drupal-cache",
    "x-shopify-stage",
    "x-wix-request-id",
]

# This is the baseline configuration dictionary.
DEFAULT_CONFIG: dict[str, Any] = {
    "user_agent": USER_AGENT,
    "accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "accept_language": "en-US,en;q=0.5",
    "curated_headers": DEFAULT_CURATED_HEADERS,
    # --- Plain fetch ---
    "fetch": {
        "timeout": 15.0,
        "max_content_bytes": 5 * 1024 * 1024,  # 5 MiB
        "max_redirects": 5,
        "min_html_length": 100,
        # Re-check every redirect hop and the final URL (closes redirect SSRF).
        "revalidate_redirects": True,
    },
    # --- Headless browser ---
    "render": {
        "timeout": 30.0,
        "settle_seconds": 1.0,
        "wait_until": "domcontentloaded",
        "max_captured_requests": 300,
        "blocked_resource_types": ["image", "media", "font"],
        "min_html_length": 50,
    },
    # --- DNS safety cache ---
    "dns": {
        "safe_ttl_seconds": 60.0,
        "failed_ttl_seconds": 30.0,
        "max_entries": 10_000,
        "evict_fraction": 0.25,
        "timeout_seconds": 5.0,
    },
    "admission": {
        "max_concurrent": 2,
    },
    "rate_limit": {
        "enabled": False,
        "per_minute": 2,
        "per_day": 5,
        "redis_url": None,
        "key_prefix": "safe_audit:scan",
        "user_agent_chars": 200,
        # Checked in order; the first one present wins.
        "client_ip_headers": ["x-forwarded-for", "x-real-ip", "cf-connecting-ip"],
    },
    "performance": {
        "pagespeed_api_key": None,
        "pagespeed_url": "https://www.googleapis.com/pagespeedonline/v5/runPagespeed",
        "timeout": 30.0,
        "strategy": "mobile",
    },
}


def _deep_merge_dict(
    base: MutableMapping[str, Any], overrides: Mapping[str, Any]
) -> MutableMapping[str, Any]:
    """Recursively merge dicts."""
    for key, value in overrides.items():
        if isinstance(value, Mapping) and isinstance(base.get(key), MutableMapping):
            base[key] = _deep_merge_dict(base[key], value)
        else:
            base[key] = value
    return base


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        log.warning("Ignoring non-integer %s=%r", name, raw)
        return default
    if value <= 0:
        log.warning("Ignoring non-positive %s=%r", name, raw)
        return default
    return value


def rate_limits_enabled(env: Mapping[str, str]) -> bool | None:
    """
    SAFE_AUDIT_RATE_LIMIT_ENABLED wins when set. Otherwise limits are only
    enforced when SAFE_AUDIT_ENV says we are in production. Returns None when
    neither variable is present so file configuration stays in charge.
    """
    explicit = env.get("SAFE_AUDIT_RATE_LIMIT_ENABLED")
    if explicit is not None:
        return explicit.strip().lower() == "true"
    deploy_env = env.get("SAFE_AUDIT_ENV")
    if deploy_env is not None:
        return deploy_env.strip().lower() == "production"
    return None


def apply_env_overrides(
    config: dict[str, Any], env: Mapping[str, str] | None = None
) -> dict[str, Any]:
    env = os.environ if env is None else env
    rl = config["rate_limit"]

    enabled = rate_limits_enabled(env)
    if enabled is not None:
        rl["enabled"] = enabled
    rl["per_minute"] = _env_int(env, "SAFE_AUDIT_RATE_LIMIT_PER_MINUTE", rl["per_minute"])
    rl["per_day"] = _env_int(env, "SAFE_AUDIT_RATE_LIMIT_PER_DAY", rl["per_day"])
    if env.get("SAFE_AUDIT_REDIS_URL"):
        rl["redis_url"] = env["SAFE_AUDIT_REDIS_URL"]
    if env.get("SAFE_AUDIT_CLIENT_IP_HEADERS"):
        rl["client_ip_headers"] = [
            h.strip().lower() for h in env["SAFE_AUDIT_CLIENT_IP_HEADERS"].split(",") if h.strip()
        ]

    config["admission"]["max_concurrent"] = _env_int(
        env, "SAFE_AUDIT_MAX_CONCURRENT_AUDITS", config["admission"]["max_concurrent"]
    )
    if env.get("PAGESPEED_INSIGHTS_API_KEY"):
        config["performance"]["pagespeed_api_key"] = env["PAGESPEED_INSIGHTS_API_KEY"]
    return config


def load_config(
    pyproject_path: Path | None = None, env: Mapping[str, str] | None = None
) -> dict[str, Any]:
    """
    Loads configuration from defaults, pyproject.toml and the environment.

    1. Starts with a deep copy of DEFAULT_CONFIG.
    2. If `tomli` is installed and `pyproject.toml` exists, merges
       `[tool.safe_audit]` over the defaults.
    3. Applies SAFE_AUDIT_* / PAGESPEED_INSIGHTS_API_KEY environment overrides.
    """
    config = copy.deepcopy(DEFAULT_CONFIG)

    if pyproject_path is None:
        pyproject_path = Path.cwd() / "pyproject.toml"

    if tomli is None:
        log.debug("tomli not installed. Skipping pyproject.toml configuration.")
    elif not pyproject_path.exists():
        log.debug("No pyproject.toml found at %s. Using default config.", pyproject_path)
    else:
        try:
            with pyproject_path.open("rb") as f:
                toml_data = tomli.load(f)

            project_config = toml_data.get("tool", {}).get("safe_audit", {})
            if project_config:
                log.info("Loading config from %s", pyproject_path)
                config = _deep_merge_dict(config, project_config)  # type: ignore
            else:
                log.debug("No [tool.safe_audit] section in %s.", pyproject_path)
        except (OSError, tomli.TOMLDecodeError) as e:
            log.warning(
                "Failed to load or parse %s: %s. Using default config.",
                pyproject_path,
                e,
                exc_info=True,
            )

    return apply_env_overrides(config, env)


def merge_overrides(config: dict[str, Any], overrides: Mapping[str, Any]) -> dict[str, Any]:
    """Returns a copy of ``config`` with ``overrides`` deep-merged on top."""
    merged = copy.deepcopy(config)
    return _deep_merge_dict(merged, overrides)  # type: ignore[return-value]
