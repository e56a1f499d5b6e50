"""Run a command once a watched directory tree has been quiet for a while.

This package watches one or more directory trees for file activity and runs
a user-supplied command after a debounce delay, so that a burst of related
events (a build writing many files, an editor saving atomically) triggers
the command exactly once.
"""

__version__ = "0.1.0"
