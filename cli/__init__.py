"""perfharness command line interface."""
