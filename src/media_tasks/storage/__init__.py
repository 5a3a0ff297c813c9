"""Durable storage for orchestrator jobs."""
