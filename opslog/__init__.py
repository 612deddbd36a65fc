"""opslog - live and historical job log client for the DevOps task platform."""

__version__ = "0.3.0"
