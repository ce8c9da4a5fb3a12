"""
Reportflow Engine - Report Ingestion Service

FastAPI service and CLI that ingest spreadsheet-exported business reports
(payroll, staffing, attendance, logistics) into per-report Postgres tables.
"""

__version__ = "0.1.0"
