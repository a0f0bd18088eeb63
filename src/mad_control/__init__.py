"""Host-side controller for the MaD tensile tester."""

__version__ = "0.1.0"
