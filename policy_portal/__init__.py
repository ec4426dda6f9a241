"""
Backend package for the insurance policy portal.

This package provides a FastAPI application over the hosted backend
service (Postgres tables, auth, object storage and edge functions) so
administrators can manage clients and their policies, and clients can
see their own.
"""
