"""Context window management: token estimates, condensation, truncation."""
