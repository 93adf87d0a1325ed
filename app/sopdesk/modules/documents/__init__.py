"""Published SOP documents and their version history."""
