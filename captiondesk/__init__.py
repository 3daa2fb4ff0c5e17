"""Caption job dashboard backend: uploads, usage metering, job lifecycle and billing."""

__version__ = "0.1.0"
