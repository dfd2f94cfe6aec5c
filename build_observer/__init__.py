"""
Build Observer Module

Client-side build observability for the deployment dashboard.
Classifies raw build statuses and keeps build log views in sync with the
remote build service by polling.

Components:
- Status classifier: raw status string -> canonical lifecycle state
- Log synchronizer: per-build polling session with sequence-guarded snapshots
- Session registry: explicit ownership of sessions per observation surface
- Observation surfaces: inline log viewer and build history browser
- Dashboard API: FastAPI router exposing the surfaces to the web UI
"""

__version__ = "0.3.0"
