"""CLI module for wa-agent."""
