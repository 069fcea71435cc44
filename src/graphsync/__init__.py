"""
Graph API to SQL synchronization service

Pulls paginated records from OAuth2-protected directory endpoints and
reconciles them into SQLite, PostgreSQL or SQL Server tables whose schema
grows as the shape of incoming records changes.
"""

__version__ = "1.0.0"
__author__ = "Graph DB Sync"

from .pipeline.orchestrator import SyncOrchestrator, build_orchestrator

__all__ = ["SyncOrchestrator", "build_orchestrator"]
