"""promptkeep - durable archive of Claude prompt history.

Tails the source tool's history log, archives every prompt with its pasted
texts and images into day partitions, and prunes the archive by age.
"""

__version__ = "0.1.0"
