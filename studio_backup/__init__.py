"""
Backup and restore service for Creative AI Studio user data.

This package snapshots a user's profile, projects, generations, templates,
credential references, audit trail and files into one hashed document,
writes it to configured destinations and restores it on request. It ships a
FastAPI app, a queue-driven worker and in-memory backends for development.
"""
