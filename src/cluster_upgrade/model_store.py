"""Load and save the cluster api model (JSON)."""

from __future__ import annotations

import json
from pathlib import Path

import pydantic
import structlog

from cluster_upgrade.errors import ConfigurationError
from cluster_upgrade.models import ClusterModel

log = structlog.get_logger()


def load_cluster_model(path: str | Path) -> tuple[ClusterModel, str]:
    """Read an api model file, returning the model and its api version tag.

    Raises:
        ConfigurationError: If the file is missing, not JSON, or not a valid model.
    """
    path = Path(path)
    try:
        raw = json.loads(path.read_text())
    except FileNotFoundError as exc:
        raise ConfigurationError(f"api model file not found: {path}", stage="configuration") from exc
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"api model file {path} is not valid JSON: {exc}", stage="configuration") from exc

    if not isinstance(raw, dict):
        raise ConfigurationError(f"api model file {path} must contain a JSON object", stage="configuration")
    try:
        model = ClusterModel.model_validate(raw)
    except pydantic.ValidationError as exc:
        msg = f"api model file {path} is invalid: {exc.error_count()} error(s), first: {exc.errors()[0]['msg']}"
        raise ConfigurationError(msg, stage="configuration") from exc

    api_version = model.api_version or ""
    log.info("cluster_model_loaded", path=str(path), api_version=api_version, version=model.current_version)
    return model, api_version


def save_cluster_model(path: str | Path, model: ClusterModel, api_version: str) -> None:
    """Write the model back under ``api_version``.

    Only fields present in the loaded file or changed since are written, together
    with every unknown key carried over from the file.
    """
    path = Path(path)
    data = model.model_dump(by_alias=True, exclude_unset=True, mode="json")
    data["apiVersion"] = api_version
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(data, indent=2) + "\n")
    tmp.replace(path)
    log.info("cluster_model_saved", path=str(path), api_version=api_version, version=model.current_version)
