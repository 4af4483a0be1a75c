"""Signals emitted by the redemption core.

burn_stage_changed is sent once per stage a burn run enters, in order:
preparing, signing, broadcasting, confirming, completing, completed
(or failed / unknown). Receivers get order_id, attempt_id, stage,
transaction_id and error as keyword arguments.
"""

from django.dispatch import Signal

burn_stage_changed = Signal()
