"""Authentication backend for the donation / supply coordination API."""
