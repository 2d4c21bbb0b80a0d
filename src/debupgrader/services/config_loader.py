"""Configuration loader for DebUpgrader."""

from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from debupgrader.constants import EXIT_INVALID_ARGS
from debupgrader.errors import UpgraderError


class ConfigLoader:
    """Loads YAML configuration files for CLI defaults."""

    SUPPORTED_KEYS = {
        "services",
        "conffile_policy",
        "skip_reboot_check",
        "dry_run",
        "verbose",
        "trace_commands",
        "syslog",
        "force",
        "log_file",
        "state_dir",
        "lock_file",
        "lock_timeout",
    }

    def load(self, config_path: Optional[str]) -> Dict[str, Any]:
        if not config_path:
            return {}

        path = Path(config_path)
        if not path.exists():
            raise UpgraderError(f"Config file not found: {config_path}", exit_code=EXIT_INVALID_ARGS)

        try:
            parsed = yaml.safe_load(path.read_text(encoding="utf-8"))
        except (yaml.YAMLError, OSError) as exc:
            raise UpgraderError(
                f"Invalid config file '{config_path}': {exc}", exit_code=EXIT_INVALID_ARGS
            ) from exc

        if parsed is None:
            return {}
        if not isinstance(parsed, dict):
            raise UpgraderError(
                "Config file must contain a YAML mapping at the root.",
                exit_code=EXIT_INVALID_ARGS,
            )

        unknown = sorted(set(parsed.keys()) - self.SUPPORTED_KEYS)
        if unknown:
            unknown_list = ", ".join(unknown)
            raise UpgraderError(
                f"Unknown configuration keys: {unknown_list}", exit_code=EXIT_INVALID_ARGS
            )

        services = parsed.get("services")
        if isinstance(services, list):
            parsed["services"] = ",".join(str(item) for item in services)

        return parsed
