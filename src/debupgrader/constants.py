"""Static values shared across DebUpgrader."""

PROGRAM_NAME = "debupgrader"

SOURCE_CODENAME = "bookworm"
TARGET_CODENAME = "trixie"
SOURCE_VERSION = "12"
TARGET_VERSION = "13"

LOG_FILE = "/var/log/debian-upgrade-trixie.log"
LOCK_FILE = "/var/lock/debian-upgrade-trixie.lock"
STATE_DIR = "/var/lib/debian-upgrade-trixie"
DEFAULT_CONFIG_FILE = "/etc/debupgrader.yml"

OS_RELEASE_FILE = "/etc/os-release"
APT_DIR = "/etc/apt"
REBOOT_REQUIRED_FILE = "/var/run/reboot-required"
DPKG_LOCK_FILE = "/var/lib/dpkg/lock"
APT_LOCK_FILES = (
    "/var/lib/apt/lists/lock",
    "/var/lib/dpkg/lock",
    "/var/lib/dpkg/lock-frontend",
    "/var/cache/apt/archives/lock",
)

NETWORK_HOSTS = ("deb.debian.org", "security.debian.org")

REQUIRED_COMMANDS = (
    "apt",
    "apt-get",
    "apt-mark",
    "dpkg",
    "dpkg-query",
    "systemctl",
    "fuser",
)

LOCK_TIMEOUT_SECONDS = 300
MIN_DISK_SPACE_MB = 2048
RECOMMENDED_MIN_FDS = 256
SNAPSHOT_REMINDER_SECONDS = 10
CHILD_GRACE_SECONDS = 0.5
COMMAND_STOP_GRACE_SECONDS = 10

CONFFILE_POLICIES = ("replace", "keep")

LOG_FILE_MODE = 0o644

EXIT_SUCCESS = 0
EXIT_GENERAL_ERROR = 1
EXIT_LOCK_FAILED = 2
EXIT_INVALID_ARGS = 3
EXIT_ROOT_REQUIRED = 4
EXIT_WRONG_RELEASE = 5
EXIT_ALREADY_UPGRADED = 6
EXIT_NETWORK_ERROR = 7
EXIT_DISK_SPACE = 8
EXIT_VALIDATION_FAILED = 9
