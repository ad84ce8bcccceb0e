"""Shared plumbing: configuration and systemd integration."""
