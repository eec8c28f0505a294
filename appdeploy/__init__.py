"""appdeploy: deploy locally built iOS app bundles to USB-connected devices."""

__version__ = "0.1.0"
