"""Shared configuration, logging, models and errors."""
