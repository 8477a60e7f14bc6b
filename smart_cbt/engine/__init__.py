"""Session lifecycle, violation detection, scoring, monitoring and reporting."""
