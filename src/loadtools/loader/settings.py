from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from loadtools.workflow.policy import RetryPolicy

from .classify import DEFAULT_EXIT_CODES, build_exit_code_map
from .control import DEFAULT_TEMPLATE
from .types import ExitClass, LoaderOptions

LOADER_BIN_ENV = "SQLLDR_BIN"


@dataclass(frozen=True)
class LoaderSettings:
    """
    How the external bulk loader is invoked:

    loader:
      command: sqlldr               # overridden by $SQLLDR_BIN
      args: ["userid=${LOAD_USER}/${LOAD_PASSWORD}@${LOAD_DB}"]
      working_dir: /data/work
      env: {NLS_LANG: AMERICAN_AMERICA.AL32UTF8}
      timeout: 3600
      retry: {max_retries: 3, base_delay: 10, max_delay: 300}
      exit_codes: {0: success, 2: partial, 1: fatal, 3: fatal}
      template: sqlldr.ctl.j2
      template_dir: ./templates
      options: {direct_path: true, parallel_degree: 4, bind_size: 256000, errors: 1000}
    """

    command: str = "sqlldr"
    args: Tuple[str, ...] = ()
    working_dir: Optional[Path] = None
    env: Dict[str, str] = field(default_factory=lambda: {"TZ": "UTC"})
    env_remove: Tuple[str, ...] = ("ORACLE_PASSWORD", "LOAD_PASSWORD")
    timeout: float = 3600.0
    retry: RetryPolicy = field(default_factory=lambda: RetryPolicy(max_retries=3, base_delay=10.0, max_delay=300.0))
    exit_codes: Dict[int, ExitClass] = field(default_factory=lambda: dict(DEFAULT_EXIT_CODES))
    template: str = DEFAULT_TEMPLATE
    template_dir: Optional[Path] = None
    options: LoaderOptions = field(default_factory=LoaderOptions)

    @classmethod
    def from_config(cls, cfg: Dict[str, Any] | None) -> "LoaderSettings":
        cfg = dict(cfg or {})
        timeout = float(cfg.get("timeout", 3600.0))
        if timeout <= 0:
            raise ValueError("loader timeout must be positive")
        return cls(
            command=os.environ.get(LOADER_BIN_ENV) or str(cfg.get("command", "sqlldr")),
            args=tuple(str(a) for a in cfg.get("args", [])),
            working_dir=Path(cfg["working_dir"]) if cfg.get("working_dir") else None,
            env={"TZ": "UTC", **{str(k): str(v) for k, v in (cfg.get("env") or {}).items()}},
            env_remove=tuple(cfg.get("env_remove", ("ORACLE_PASSWORD", "LOAD_PASSWORD"))),
            timeout=timeout,
            retry=RetryPolicy.from_config(cfg.get("retry"), max_retries=3, base_delay=10.0, max_delay=300.0),
            exit_codes=build_exit_code_map(cfg.get("exit_codes")),
            template=str(cfg.get("template", DEFAULT_TEMPLATE)),
            template_dir=Path(cfg["template_dir"]) if cfg.get("template_dir") else None,
            options=LoaderOptions.from_config(cfg.get("options")),
        )

    def environment(self) -> Dict[str, str]:
        env = {**os.environ, **self.env}
        for key in self.env_remove:
            env.pop(key, None)
        return env

    def expanded_args(self) -> Tuple[str, ...]:
        """``${VAR}`` references resolved from this process's environment."""
        return tuple(os.path.expandvars(a) for a in self.args)
