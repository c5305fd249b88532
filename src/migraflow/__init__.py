"""
Migraflow: Durable multi-stage orchestration for database migrations.

Runs extract/transform/load/validate/report stages through a durable job
queue so executions survive without a long-running worker process.
"""

__version__ = "0.1.0"
