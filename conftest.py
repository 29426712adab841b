"""pytest configuration: the project root holds the rsync_sender module."""
