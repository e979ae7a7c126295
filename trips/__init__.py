"""
Trip history consumers.

- models.py: request/response models for the remote trip-sync API
- services/: sync client, tracker mirror and CSV export
"""
