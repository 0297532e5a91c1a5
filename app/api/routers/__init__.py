"""
FastAPI routers for the equipment import API.

``equipment_imports`` covers the upload/mapping/execute flow and
``import_history`` exposes the audit trail of import runs.
"""
