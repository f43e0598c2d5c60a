# config.example.py

"""
Documentation-only module (safe to commit).

Settings are read from environment variables, optionally via a local .env
file (gitignored). See src/shared_todo/config.py for the parsing rules.
"""

ENV_VARS = {
    # App / logging
    "TODO_APP_NAME": "App display name (default: shared-todo).",
    "TODO_LOG_LEVEL": "Console logging level (default: INFO). The log file always gets DEBUG.",
    # Paths (gitignored)
    "TODO_DATA_DIR": "Local data directory for the log file (default: .local/shared_todo).",
    "TODO_DB_PATH": "Shared SQLite file; point several sessions at it (default: <data_dir>/todo.sqlite3).",
    "TODO_TABLE_PREFIX": "Prefix for the tasks/users tables (default: aisws_).",
    # Console session
    "TODO_CONSOLE_ENABLED": "Run the interactive console (true/false, default: true).",
    "TODO_USER": "Name of the user to continue as on start (optional).",
    "TODO_DEFAULT_TASK_TITLE": "Title used by /new without text (default: New task).",
    "TODO_AVATAR_URL_TEMPLATE": "Avatar URL for new users, {name} is replaced (default: https://i.pravatar.cc/64?u={name}).",
    # View
    "TODO_SORT_KEY": "Initial sort key: status or updated (default: status).",
    "TODO_SORT_DESCENDING": "Sort descending (true/false, default: false).",
    # Sync loops
    "TODO_POLL_INTERVAL_SECONDS": "How often the change feed polls the store (default: 1.0).",
    "TODO_DISPATCH_INTERVAL_SECONDS": "How often queued writes are flushed (default: 0.2).",
}
