"""Services package - chat core components."""
