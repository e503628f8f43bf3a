"""Batch execution engine for Markdown checkbox playbooks.

A run walks the configured documents in order and asks the agent to finish
one unchecked task per invocation. Progress is never tracked internally: after
each invocation the document is read again and the drop in the number of
unchecked boxes is taken as the work done. That keeps the engine compatible
with documents edited by hand (or by the agent in unexpected ways) while the
run is in flight.
"""
