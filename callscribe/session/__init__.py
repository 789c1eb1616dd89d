"""Live transcription sessions: lifecycle, transcript merge and fan-out.

``SessionManager`` owns the state machine, ``SubscriptionHub`` delivers its
events, ``SessionStore`` holds the live table and ``SnapshotQueue`` writes
snapshots behind the audio path.
"""
