"""Terminal-facing helpers: state classification, command safety, local shell."""
