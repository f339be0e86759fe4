"""auditvault services.

- audit_service: dual-backend audit trail (PostgreSQL rows or S3 blobs)
  with a shared query surface, revision reconstruction and undo
"""
