"""Services package for the admission controller."""
