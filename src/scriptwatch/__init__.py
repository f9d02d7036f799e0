"""scriptwatch: flags npm publishes that introduce install-time scripts."""

__version__ = "0.1.0"
