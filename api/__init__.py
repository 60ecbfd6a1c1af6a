"""Dialectic Core — HTTP API, action dispatch and worker backends."""
