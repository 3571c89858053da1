"""docdesk backend package."""
