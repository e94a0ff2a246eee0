"""Ecosystem provisioning saga and its persisted records."""
