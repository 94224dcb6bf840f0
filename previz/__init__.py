"""Timeline-to-video export service for storyboard previz projects."""
