"""Meeting scheduling coordination engine.

Availability aggregation and slot resolution (``meetbot.availability``,
``meetbot.engine``) plus the asynchronous permission-collecting meeting
bot (``meetbot.state_machine``).
"""

__version__ = "0.1.0"
