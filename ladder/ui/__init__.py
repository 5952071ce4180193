"""
UI Module - Discord UI Components

Views used by the ladder cogs.

Available components:
- ConfirmationView: Yes/No prompt that resolves to a bool
- ScoreboardView: Live scoreboard buttons bound to a LiveScoreSession
"""
