PLANNING_DIR_NAME = ".planning"
GRAPH_DIR_NAME = "graph"
INDEX_FILE = "_index.yaml"
INDEX_LOCK_FILE = "_index.lock"
OVERVIEW_FILE = "overview.md"
REQUIREMENTS_DIR_NAME = "requirements"

STATE_DIR_NAME = ".forge"
CONFIG_FILE = "config.yaml"
SESSIONS_FILE = "sessions.yaml"
SESSIONS_LOCK_FILE = "sessions.lock"
VERIFY_CACHE_FILE = "last-verify.yaml"

WORKTREE_ROOT_NAME = ".forge-wt"
WORK_BRANCH_SUFFIX = "-wt"

WINDOWS_LOCK_BYTES = 4096

DEFAULT_MAX_ITERATIONS = 5
DEFAULT_AGENT_COMMAND = "claude -p - --dangerously-skip-permissions"
DEFAULT_GATES = ["types", "lint", "tests"]
CORE_GATES = ("types", "lint", "tests")
DEFAULT_GATE_TIMEOUT_SECONDS = 600
DEFAULT_GATE_COMMANDS = {
    "types": "mypy .",
    "lint": "ruff check .",
    "tests": "pytest -q",
}
DEFAULT_DEV_SERVER_STARTUP_SECONDS = 60

# Branches the worktree manager never deletes.
PROTECTED_BRANCHES = frozenset({"main", "master", "develop", "production", "staging"})

SESSION_STATUS_ACTIVE = "active"
SESSION_STATUS_STALE = "stale"
SESSION_STATUS_COMPLETING = "completing"
SESSION_STATUSES = (SESSION_STATUS_ACTIVE, SESSION_STATUS_STALE, SESSION_STATUS_COMPLETING)

LINEAR_API_URL = "https://api.linear.app/graphql"
LINEAR_API_KEY_ENV = "LINEAR_API_KEY"
LINEAR_STATE_STARTED = "In Progress"
LINEAR_STATE_DONE = "Done"

# Exit code used for commands that hit their timeout (matches coreutils `timeout`).
TIMEOUT_EXIT_CODE = 124
