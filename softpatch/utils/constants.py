import re
from enum import Enum

APP_NAME = "SoftPatch"


class LaunchAfter(str, Enum):
    EXIT = "exit"
    WAIT = "wait"


# Lock directory layout
GLOBAL_LOCK_NAME = "global_lock"
UPDATER_LOCK_NAME = "updater_lock"
INSTANCE_LOCK_PREFIX = "instance_lock_"
INSTANCE_LOCK_PATTERN = re.compile(r"^instance_lock_[0-9]{13}_[0-9]+$")

# Storage folder layout
CLIENT_FILE_NAME = "client.json"
REPLACEMENT_FILE_NAME = "replacement.txt"
PATCH_FILE_SUFFIX = ".patch"
ACTION_LOG_NAME = "action.log"
BACKUP_FILE_PATTERN = re.compile(r"^old_[0-9]+$")

# Patch payload layout
PATCH_MANIFEST_NAME = "patch.json"
PATCH_FILES_FOLDER = "files"
PATCH_TYPE_FULL = "full"
PATCH_TYPE_PATCH = "patch"

# Timing, all in seconds
DEFAULT_MAX_EXECUTION_TIME = 15.0
RENAME_RETRY_DELAY = 0.05
LOCK_RETRY_DELAY = 0.05
LAUNCH_LOCK_TIMEOUT = 1.0
PROGRESS_UPDATE_INTERVAL = 0.2
SPEED_AVERAGE_WINDOW = 5.0

# Network
DOWNLOAD_CHUNK_SIZE = 32768
CONNECT_TIMEOUT = 15
READ_TIMEOUT = 30
SHA256_PATTERN = re.compile(r"^[0-9a-f]{64}$")
CONTENT_RANGE_PATTERN = re.compile(r"^bytes\s(\d+)-(\d+)/(\d+)$")

# Environment overrides
MAX_EXECUTION_TIME_ENV = "SOFTPATCH_MAX_EXECUTION_TIME"
CLIENT_FILE_ENV = "SOFTPATCH_CLIENT"

# Self-updater exit codes
EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2
EXIT_ABORTED = 3
