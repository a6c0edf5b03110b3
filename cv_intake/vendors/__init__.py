"""HTTP adapters for the model and CRM vendors."""
