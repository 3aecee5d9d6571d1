"""Services for the authorization engine."""
