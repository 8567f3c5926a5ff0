"""Deferred deep-link attribution service."""
