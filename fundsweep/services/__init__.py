"""Sanitize run services: scan, resolve, evaluate, plan, commit and report."""
