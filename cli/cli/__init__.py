"""Operator CLI for the tenant provisioner."""
