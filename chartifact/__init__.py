"""chartifact: version-controlled, environment-aware integration channel artifacts."""

__version__ = "0.1.0"
