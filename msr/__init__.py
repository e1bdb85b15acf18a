"""Machine Service Reconciler (MSR).

Keeps named services on remote Windows machines in their desired run state:
 - observe which service scripts are running (process census over SSH)
 - start / stop services whose observed state differs from the expected one
 - pull / build / deploy services on demand
 - persist every status change so concurrent passes never lose an update

Success and failure of remote commands are inferred from their text output.
"""
