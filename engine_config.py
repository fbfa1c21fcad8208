# engine_config.py

import logging
import os
import time
from pathlib import Path
from typing import Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from ruamel.yaml import YAML

# --- Logging Setup ---
logger = logging.getLogger("FlowRunner")
if not logger.hasHandlers():
    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.INFO)
    formatter = logging.Formatter('%(asctime)sZ - %(levelname)s - %(name)s - %(message)s')
    formatter.converter = time.gmtime # UTC timestamps
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)
logger.propagate = False # Prevent duplicate logs if root logger is configured

__all__ = [
    "logger", "configure_logging", "EngineConfig", "load_engine_config",
    "MAX_REPEATS", "MAX_GOTO_JUMPS", "MAX_ASSERTIONS", "MAX_VARIABLE_OPS",
    "MAX_SCRIPT_REQUESTS", "SCRIPT_TIMEOUT_MS", "MAX_RESPONSE_BYTES",
]

# --- Hard ceilings ---
MAX_REPEATS = 1000
MAX_GOTO_JUMPS = 100
MAX_ASSERTIONS = 50
MAX_VARIABLE_OPS = 100
MAX_SCRIPT_REQUESTS = 10
SCRIPT_TIMEOUT_MS = 5000
MAX_RESPONSE_BYTES = 50 * 1024 * 1024

DEFAULT_CONFIG_FILE = "engine.yaml"


def configure_logging(debug: bool, level: Optional[Union[str, int]] = None):
    """Configures the FlowRunner logger (and its handlers) from the debug flag or an explicit level."""
    if level is not None:
        log_level = logging.getLevelName(level.upper()) if isinstance(level, str) else level
        if not isinstance(log_level, int):
            logger.warning(f"Unknown log level '{level}', falling back to INFO.")
            log_level = logging.INFO
    else:
        log_level = logging.DEBUG if debug else logging.INFO
    logger.setLevel(log_level)
    for handler in logger.handlers:
        handler.setLevel(log_level)
    logger.debug(f"Flow engine logging level set to {logging.getLevelName(log_level)}")


class EngineConfig(BaseModel):
    """Runtime knobs of the flow engine. Ceilings may be lowered but never raised."""
    model_config = ConfigDict(extra="ignore")

    script_timeout_ms: int = Field(SCRIPT_TIMEOUT_MS, ge=1, le=SCRIPT_TIMEOUT_MS, description="Wall-clock limit for a single script invocation")
    max_repeats: int = Field(MAX_REPEATS, ge=0, le=MAX_REPEATS, description="Repeat-driven re-entries allowed per run")
    max_gotos: int = Field(MAX_GOTO_JUMPS, ge=0, le=MAX_GOTO_JUMPS, description="Goto jumps allowed per run")
    max_assertions: int = Field(MAX_ASSERTIONS, ge=1, le=MAX_ASSERTIONS, description="Assertions evaluated per script invocation")
    max_variable_ops: int = Field(MAX_VARIABLE_OPS, ge=1, le=MAX_VARIABLE_OPS, description="DSL setVariables operations per script invocation")
    max_script_requests: int = Field(MAX_SCRIPT_REQUESTS, ge=0, le=MAX_SCRIPT_REQUESTS, description="Outbound requests a script may send")
    flush_policy: Literal['step', 'run'] = Field('step', description="When staged durable-scope writes are handed to persistence")
    fail_on_http_error_status: bool = Field(True, description="Treat non-2xx responses as step failures")
    http_timeout_s: float = Field(30.0, gt=0, description="Total timeout for a single HTTP dispatch")
    max_response_bytes: int = Field(MAX_RESPONSE_BYTES, ge=1, le=MAX_RESPONSE_BYTES, description="Largest response body read from the wire")
    verify_ssl: bool = Field(False, description="Verify TLS certificates of step targets")
    debug: bool = Field(False, description="Enable debug logging and tracebacks")


def load_engine_config(path: Optional[Union[str, Path]] = None, overrides: Optional[Dict[str, Any]] = None) -> EngineConfig:
    """
    Load EngineConfig from a YAML file. Without an explicit path, FLOW_ENGINE_CONFIG
    is consulted, then ./engine.yaml; a missing default file yields the defaults.
    """
    explicit = path is not None or "FLOW_ENGINE_CONFIG" in os.environ
    cfg_path = Path(path or os.getenv("FLOW_ENGINE_CONFIG", DEFAULT_CONFIG_FILE))
    data: Dict[str, Any] = {}
    if cfg_path.exists():
        loaded = YAML(typ="safe").load(cfg_path.read_text(encoding="utf-8"))
        if loaded is not None and not isinstance(loaded, dict):
            raise ValueError(f"Engine config {cfg_path} must be a mapping, got {type(loaded).__name__}")
        data = dict(loaded or {})
        logger.info(f"Loaded engine config from {cfg_path}")
    elif explicit:
        raise FileNotFoundError(f"Engine config file not found: {cfg_path}")
    if overrides:
        data.update({k: v for k, v in overrides.items() if v is not None})
    return EngineConfig.model_validate(data)
