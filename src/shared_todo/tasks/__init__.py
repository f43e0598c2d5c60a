"""
Task subsystem.

Components:
- task_models.py: data structures (Task, User, TaskStatus) + wire records
- status_machine.py: status transitions and their side effects
- dependencies.py: "waiting on" validation and lookup
- sync_engine.py: optimistic local state + reconciliation
- projector.py: grouped, sorted view for rendering
- change_feed.py: change events + SQLite polling feed
- task_store.py: SQLite-backed store and its async writer
- task_api.py: async pumps wiring the engine to store and feed
"""
