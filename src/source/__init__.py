"""Source collaborators producing revisions."""
