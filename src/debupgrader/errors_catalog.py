"""Actionable error catalog for DebUpgrader."""

from typing import Dict

_ERROR_MESSAGES: Dict[str, Dict[str, str]] = {
    "lock_timeout": {
        "what": "Could not acquire lock {path} within {timeout}s. Another instance may be stuck.",
        "next": "Check for a running upgrade (`pgrep -a debupgrader`) before retrying.",
    },
    "root_required": {
        "what": "This program must be run as root.",
        "next": "Re-run with `sudo {program}`.",
    },
    "unexpected_release": {
        "what": "Unexpected release: '{current}'. Expected '{expected}'.",
        "next": "Only Debian {source_version} ({source}) systems can be upgraded by this tool.",
    },
    "os_release_missing": {
        "what": "Cannot detect release: {path} not found.",
        "next": "Make sure the base-files package is installed.",
    },
    "insufficient_disk": {
        "what": "Insufficient disk space: {available}MB available, {required}MB required on /.",
        "next": "Free space (e.g. `apt-get clean`, remove old kernels) and retry.",
    },
    "missing_commands": {
        "what": "Missing required command(s): {commands}.",
        "next": "Install missing commands and try again.",
    },
    "dns_failed": {
        "what": "DNS resolution failed for {host}.",
        "next": "Check your DNS settings (/etc/resolv.conf).",
    },
    "host_unreachable": {
        "what": "Cannot reach https://{host}: {error}",
        "next": "Check network connectivity and proxy settings.",
    },
    "no_sources_switched": {
        "what": "No sources files found containing '{codename}'.",
        "next": "Inspect /etc/apt/sources.list and /etc/apt/sources.list.d before retrying.",
    },
    "sources_update_failed": {
        "what": "Package index refresh failed against the {codename} sources.",
        "next": "The rewritten sources are broken; inspect them before retrying.",
    },
    "phase_failed": {
        "what": "Phase '{phase}' failed.",
        "next": "Inspect {log_file} and re-run; completed phases are skipped.",
    },
}


def actionable_error(code: str, **kwargs: str) -> str:
    if code not in _ERROR_MESSAGES:
        raise KeyError(f"Unknown error catalog key: {code}")

    template = _ERROR_MESSAGES[code]
    what = template["what"].format(**kwargs)
    next_step = template["next"].format(**kwargs)
    return f"{what} Suggested action: {next_step}"
