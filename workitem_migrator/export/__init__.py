"""Jira export: revision reconstruction and mapping."""
