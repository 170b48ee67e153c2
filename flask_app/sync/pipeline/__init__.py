"""Sync pipeline services: staging, identity merge, run tracking, and orchestration."""
