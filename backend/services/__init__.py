"""Domain services for tasks, subtasks, teams, and outbound email."""
