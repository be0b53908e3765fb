"""
Session lifecycle.

- registry: which sessions exist and whether they are running
- supervisor: start / close and event wiring
- backup: per-session profile snapshots
- health: periodic scan and restart escalation
- bulk: export / import of all sessions
"""
