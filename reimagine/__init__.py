"""Reimagine Photos backend: credit-gated AI photo editing."""
