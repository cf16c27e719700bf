"""vc2vc: bulk VM migration between two vCenter clusters via a shared staging datastore."""

__version__ = "0.1.0"
