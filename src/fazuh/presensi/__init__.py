"""Presensi: SIMA attendance automation.

This package contains the portal session engine, the encrypted credential
store, and the incremental sync scheduler that polls the SIMA e-learning
portal for new course material and performs self check-in on it.
"""
