"""Script Conveyor - turns source articles into short-form video scripts.

Each article goes through a bounded draft/evaluate loop between a
scriptwriter agent and an editor agent, with live progress pushed to
subscribers and a per-subject budget governor limiting the work done.
"""

__version__ = "0.1.0"
