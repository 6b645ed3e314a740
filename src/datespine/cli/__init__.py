"""datespine command-line interface."""
