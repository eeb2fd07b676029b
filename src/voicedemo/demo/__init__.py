"""Demo session flow."""
