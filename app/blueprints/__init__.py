"""
Authorization Workflow Engine
Blueprint registry.

Blueprints are registered by ``create_app`` under ``/api/v1``.
"""
