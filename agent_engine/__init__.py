"""Agent Engine core.

Lets an orchestrating model find and invoke tools through a small set of
meta-tools, delegate work to a graph of sub-agents, and pause for
clarification from the user.
"""

__version__ = "0.1.0"
