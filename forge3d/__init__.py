"""
Forge3D Backend
---------------
Credit ledger and generation workflow engine for paid 3D generation.

This package contains:
- config: Application configuration
- db: Database connection utilities
- errors: Error taxonomy shared by services and routes
- models: Phase, workflow and transaction vocabularies
- middleware: Identity and admin decorators for routes
- store/: Persistence backends (Postgres, in-memory)
- services/: Ledger, jobs, workflows, reconciliation, payments
- routes/: Flask Blueprints for /api
- utils/: Helper functions and error handlers
"""

__version__ = "1.0.0"
