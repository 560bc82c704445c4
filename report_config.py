"""
Report configuration.

Settings come from built-in defaults, then an optional YAML file, then
NEURO2_* environment variables; CLI flags are applied last by the caller.

Example config.yml::

    patient: Biggie
    data:
      data_file: data/neurocog.csv
      lookup_file: data/neuropsych_lookup_table.csv
      output_dir: output
    processing:
      age_group: child
      verbose: true
    domains:
      enabled: [iq, memory, executive]
"""

import logging
import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Mapping, Optional

import yaml

from category_resolver import validate_age_group
from neuropsych_domains import load_domain_definitions, select_definitions

logger = logging.getLogger(__name__)

ENV_OVERRIDES = {
    "NEURO2_DATA_FILE": "data_file",
    "NEURO2_LOOKUP_FILE": "lookup_file",
    "NEURO2_OUTPUT_DIR": "output_dir",
    "NEURO2_AGE_GROUP": "age_group",
    "NEURO2_VERBOSE": "verbose",
    "PATIENT": "patient",
}


@dataclass
class ReportSettings:
    """Configuration for one report run."""

    data_file: Optional[Path] = None
    lookup_file: Optional[Path] = None
    output_dir: Path = Path("output")
    age_group: Optional[str] = None
    enabled_domains: tuple = ()
    domains: tuple = ()
    verbose: bool = False
    patient: str = "Unknown"

    def __post_init__(self) -> None:
        self.data_file = Path(self.data_file).expanduser() if self.data_file else None
        self.lookup_file = Path(self.lookup_file).expanduser() if self.lookup_file else None
        self.output_dir = Path(self.output_dir).expanduser()
        self.age_group = validate_age_group(self.age_group)
        self.enabled_domains = tuple(self.enabled_domains or ())
        self.domains = tuple(self.domains or ())

    def definitions(self) -> tuple:
        """Domain definitions for this run, restricted to the enabled keys."""
        return select_definitions(load_domain_definitions(self.domains), self.enabled_domains)

    def with_overrides(self, **overrides) -> "ReportSettings":
        """Copy with every non-None override applied."""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})


def _as_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def _flatten(raw: Mapping) -> dict:
    """Map the nested YAML layout onto ReportSettings fields."""
    data = raw.get("data") or {}
    processing = raw.get("processing") or {}
    domains = raw.get("domains") or {}
    if isinstance(domains, list):
        domains = {"definitions": domains}

    flat = {
        "data_file": data.get("data_file"),
        "lookup_file": data.get("lookup_file"),
        "output_dir": data.get("output_dir"),
        "age_group": processing.get("age_group"),
        "verbose": processing.get("verbose"),
        "enabled_domains": domains.get("enabled"),
        "domains": domains.get("definitions"),
        "patient": raw.get("patient"),
    }
    if isinstance(flat["patient"], Mapping):
        flat["patient"] = flat["patient"].get("name")
    return {k: v for k, v in flat.items() if v is not None}


def read_config_file(path) -> dict:
    path = Path(path).expanduser()
    with open(path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}
    if not isinstance(raw, Mapping):
        raise ValueError(f"Configuration file {path} must contain a mapping")
    logger.info("Loaded configuration from %s", path)
    return _flatten(raw)


def env_overrides(environ: Optional[Mapping] = None) -> dict:
    environ = os.environ if environ is None else environ
    values = {}
    for env_var, field_name in ENV_OVERRIDES.items():
        value = environ.get(env_var)
        if value is None or not str(value).strip():
            continue
        values[field_name] = _as_bool(value) if field_name == "verbose" else value
    return values


def load_settings(path=None, environ: Optional[Mapping] = None) -> ReportSettings:
    """Defaults, then the YAML file (if any), then environment overrides."""
    values = {}
    if path is not None:
        values.update(read_config_file(path))
    values.update(env_overrides(environ))
    if "verbose" in values:
        values["verbose"] = _as_bool(values["verbose"])
    if "patient" in values:
        values["patient"] = str(values["patient"])
    return ReportSettings(**values)
