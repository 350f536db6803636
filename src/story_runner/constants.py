STATE_DIR_NAME = ".story_runner"
CONFIG_FILE = "config.yaml"
RUNS_DIR = "runs"

DEFAULT_PRD_DIR = "prd-json"
INDEX_FILE = "index.json"
STORIES_DIR = "stories"
UPDATE_QUEUE_FILE = "update.json"

HOME_ENV_VAR = "STORY_RUNNER_HOME"
DEFAULT_HOME_DIR = "~/.config/story-runner"
PID_REGISTRY_FILE = "pids.txt"
LOGS_DIR = "logs"
STATUS_FILE_PREFIX = "story-runner-status-"
STOP_FILE_PREFIX = "story-runner-stop-"

DEFAULT_MAX_ITERATIONS = 50
DEFAULT_GAP_SECONDS = 2
DEFAULT_TIMEOUT_SECONDS = 600
DEFAULT_KILL_GRACE_SECONDS = 5
DEFAULT_MAX_STORY_FAILURES = 10  # Lifetime failed attempts before a story is blocked

DEFAULT_MAX_RETRIES = 5
DEFAULT_NO_OUTPUT_MAX_RETRIES = 3
DEFAULT_COOLDOWN_SECONDS = 15
DEFAULT_NO_OUTPUT_COOLDOWN_SECONDS = 30

DEFAULT_LIVE_QUEUE_SIZE = 256
DEFAULT_LIVE_POLL_INTERVAL = 0.2
DEFAULT_KEY_POLL_INTERVAL = 0.1

# No real process exit status can take these values (POSIX 0..255, signals -1..-64).
TIMEOUT_EXIT_CODE = -1000
SPAWN_ERROR_EXIT_CODE = -1001

DEFAULT_MODEL = "opus"
DEFAULT_TYPE_MODELS = {
    "US": "sonnet",
    "V": "haiku",
    "TEST": "haiku",
    "BUG": "sonnet",
    "AUDIT": "opus",
    "MP": "opus",
}

DEFAULT_AGENT_COMMAND = (
    "claude --print --dangerously-skip-permissions --verbose "
    "--output-format stream-json --model {model} {prompt}"
)
DEFAULT_AGENT_COMMANDS = {
    "gemini": "gemini --yolo -o json -m {model} {prompt}",
}

DEFAULT_NTFY_SERVER = "https://ntfy.sh"
DEFAULT_NOTIFY_EVENTS = ("all_complete", "all_blocked", "error")

CRASH_LOG_RECENT_HOURS = 24
CRASH_HISTORY_LIMIT = 10

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_ALL_BLOCKED = 2
