"""Protocol services run by the listener supervisor."""
