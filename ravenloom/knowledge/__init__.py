"""Knowledge domain types and conflict detection."""
