"""
Agent orchestration package.

The entrypoint remains `main.py` at the repo root. The state machine, pacing,
rotation and the run loop live here to keep entrypoints thin and testable.
"""
