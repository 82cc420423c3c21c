"""EduLift invitation and membership transition engine."""
