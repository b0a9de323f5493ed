from __future__ import annotations

import json
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

from dotenv import load_dotenv
from omegaconf import DictConfig, OmegaConf
from omegaconf.errors import OmegaConfBaseException
from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError
from .models import ConfigMetadata, ConversionOptions

CONFIG_PATH = Path(__file__).resolve().parent / "config" / "config.yaml"

NOTES = {
    "applyOcr": "Runs OCRmyPDF before conversion; reported as hasOcr=false when the tool is unavailable.",
    "verifyCompliance": "Validates the output with veraPDF; non-compliant output fails the file.",
    "optimizeSize": "Uses Ghostscript's /ebook settings instead of /prepress.",
}

OptionsPayload = Union[str, bytes, Mapping[str, Any], None]


@lru_cache(maxsize=1)
def _load_default_config() -> DictConfig:
    if not CONFIG_PATH.exists():
        raise FileNotFoundError(f"Default config not found at {CONFIG_PATH}")
    load_dotenv()
    return OmegaConf.load(CONFIG_PATH)


def load_settings(overrides: Optional[Dict[str, Any]] = None) -> DictConfig:
    """
    Build the runtime configuration.

    Overrides are merged over the packaged defaults in struct mode, so a
    misspelled key fails loudly instead of being ignored. Interpolations are
    resolved eagerly to pick up environment variables at load time.
    """
    base = OmegaConf.create(OmegaConf.to_container(_load_default_config(), resolve=False))
    OmegaConf.set_struct(base, True)
    merged = OmegaConf.merge(base, OmegaConf.create(overrides or {}))
    OmegaConf.resolve(merged)
    return DictConfig(merged)


def default_options_container() -> Dict[str, Any]:
    config = _load_default_config()
    return OmegaConf.to_container(config.conversion.defaults, resolve=True)  # type: ignore[return-value]


def parse_options(payload: OptionsPayload) -> ConversionOptions:
    """
    Validate a client options payload into ConversionOptions.

    The payload may be a JSON document (as sent in a multipart form field), an
    already decoded mapping, or empty. Missing keys fall back to the configured
    defaults; unknown keys and non-boolean values are rejected.
    """
    if payload is None or (isinstance(payload, (str, bytes)) and not payload.strip()):
        raw: Any = {}
    elif isinstance(payload, (str, bytes)):
        try:
            raw = json.loads(payload)
        except json.JSONDecodeError as exc:
            raise ValidationError(f"Invalid options JSON: {exc.msg}") from exc
    else:
        raw = payload

    if not isinstance(raw, Mapping):
        raise ValidationError("Options must be a JSON object")

    # Clients sometimes send nulls for untouched switches.
    submitted = {key: value for key, value in raw.items() if value is not None}

    defaults = OmegaConf.create(default_options_container())
    OmegaConf.set_struct(defaults, True)
    try:
        merged = OmegaConf.merge(defaults, OmegaConf.create(submitted))
    except OmegaConfBaseException as exc:
        raise ValidationError(f"Unrecognized conversion option: {_first_line(exc)}") from exc

    try:
        return ConversionOptions.model_validate(OmegaConf.to_container(merged))
    except PydanticValidationError as exc:
        fields = ", ".join(".".join(str(part) for part in err["loc"]) for err in exc.errors())
        raise ValidationError(f"Invalid conversion options: {fields}") from exc


def build_config_metadata(settings: DictConfig) -> ConfigMetadata:
    return ConfigMetadata(
        defaults=default_options_container(),
        max_file_size_mb=int(settings.intake.max_file_size_mb),
        allowed_content_types=list(settings.intake.allowed_content_types),
        notes=NOTES,
    )


def _first_line(exc: Exception) -> str:
    return str(exc).splitlines()[0] if str(exc) else type(exc).__name__
