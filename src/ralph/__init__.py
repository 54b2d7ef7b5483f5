"""Ralph: autonomous task-execution loop over a Beads issue tracker."""

__version__ = "0.1.0"
