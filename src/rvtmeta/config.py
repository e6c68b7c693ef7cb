"""Configuration loading for the extraction pipeline."""

from __future__ import annotations

import json
import os
import re
from pathlib import Path

import keyring

from rvtmeta.exceptions import ConfigError
from rvtmeta.models import PipelineConfig

SERVICE_NAME = "rvtmeta-aps"
CLIENT_ID_KEY = "client_id"
CLIENT_SECRET_KEY = "client_secret"

DEFAULT_CONFIG_PATH = Path("config/pipeline_config.json")


def get_client_credentials() -> tuple[str, str]:
    """Get APS client id/secret: system keyring first, then environment.

    Returns:
        ``(client_id, client_secret)``.

    Raises:
        ConfigError: If either value is missing everywhere, with
            actionable instructions.
    """
    client_id = keyring.get_password(SERVICE_NAME, CLIENT_ID_KEY) or os.environ.get("APS_CLIENT_ID")
    client_secret = (
        keyring.get_password(SERVICE_NAME, CLIENT_SECRET_KEY) or os.environ.get("APS_CLIENT_SECRET")
    )
    if client_id and client_secret:
        return client_id, client_secret

    raise ConfigError(
        "APS client credentials not found.\n"
        "Set them with: rvtmeta config set-credentials\n"
        "Or: export APS_CLIENT_ID=... APS_CLIENT_SECRET=..."
    )


def store_client_credentials(client_id: str, client_secret: str) -> None:
    """Save client credentials in the system keyring."""
    keyring.set_password(SERVICE_NAME, CLIENT_ID_KEY, client_id)
    keyring.set_password(SERVICE_NAME, CLIENT_SECRET_KEY, client_secret)


def delete_client_credentials() -> bool:
    """Remove stored credentials; returns ``False`` if none were stored."""
    removed = False
    for key in (CLIENT_ID_KEY, CLIENT_SECRET_KEY):
        if keyring.get_password(SERVICE_NAME, key) is not None:
            keyring.delete_password(SERVICE_NAME, key)
            removed = True
    return removed


def default_bucket_key(client_id: str) -> str:
    """Bucket key derived from the client id (APS keys are global)."""
    suffix = re.sub(r"[^a-z0-9]", "", client_id.lower())[:24] or "default"
    return f"rvtmeta-{suffix}"


def load_pipeline_config(
    config_path: Path | None = None,
    **overrides: object,
) -> PipelineConfig:
    """Load pipeline configuration from JSON, falling back to defaults.

    Reads ``config/pipeline_config.json`` when *config_path* is ``None``;
    a missing file means defaults.  Unknown keys in the file are ignored.
    Explicit *overrides* (``None`` values skipped) win over the file.
    Credentials not given in the file or overrides come from
    :func:`get_client_credentials`; the bucket falls back to
    ``APS_BUCKET`` and then to :func:`default_bucket_key`.

    Raises:
        ConfigError: Missing credentials or invalid values.
    """
    data = _read_config_file(config_path)
    field_names = set(PipelineConfig.__dataclass_fields__)
    kwargs = {k: v for k, v in data.items() if k in field_names}
    kwargs.update({k: v for k, v in overrides.items() if k in field_names and v is not None})

    if not kwargs.get("client_id") or not kwargs.get("client_secret"):
        client_id, client_secret = get_client_credentials()
        kwargs["client_id"] = kwargs.get("client_id") or client_id
        kwargs["client_secret"] = kwargs.get("client_secret") or client_secret

    if not kwargs.get("bucket_key"):
        kwargs["bucket_key"] = os.environ.get("APS_BUCKET") or default_bucket_key(kwargs["client_id"])

    try:
        return PipelineConfig(**kwargs)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid pipeline configuration: {exc}") from exc


def load_storage_paths(config_path: Path | None = None) -> tuple[Path, Path | None]:
    """Results directory and ledger path as configured.

    Needs no credentials, so stored results and the ledger can be
    inspected without APS access.  A ``null`` ledger path means no ledger.
    """
    data = _read_config_file(config_path)
    fields = PipelineConfig.__dataclass_fields__
    results_dir = data.get("results_dir") or fields["results_dir"].default
    ledger_path = data.get("ledger_path", fields["ledger_path"].default)
    return Path(results_dir), Path(ledger_path) if ledger_path else None


def _read_config_file(config_path: Path | None) -> dict:
    if config_path is None:
        config_path = DEFAULT_CONFIG_PATH
    if not config_path.exists():
        return {}
    try:
        with open(config_path) as f:
            data = json.load(f)
    except ValueError as exc:
        raise ConfigError(f"Config file {config_path} is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {config_path} must hold a JSON object")
    return data
