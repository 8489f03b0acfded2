"""BrightCare patient/provider messaging backend"""

__version__ = "1.0.0"
