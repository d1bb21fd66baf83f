"""stackhealth — health checks and backups for a broker / bridge / companion compose stack."""

__version__ = "0.1.0"
