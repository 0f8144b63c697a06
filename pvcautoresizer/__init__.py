"""Automatic resizing of Kubernetes PersistentVolumeClaims, with a mutating admission webhook."""

__version__ = "0.1.0"