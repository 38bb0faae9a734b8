"""DonorSync: fundraising CRM sync and resilience engine."""

__version__ = "0.1.0"
