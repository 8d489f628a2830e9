"""Pipedrive contact sync -- API client, error recovery, timeouts and the orchestrator.

Provides PipedriveClient (httpx + tenacity), the ErrorClassifier taxonomy,
RecoveryService for strategy-driven retries and resumption, TimeoutProtection
for sync and batch deadlines, progress stores, and ContactSyncService which
runs one sync per call.
"""
