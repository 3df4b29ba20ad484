"""
Pipeline queue: page requests, transcription results and account events
travel from the intake to the workers here. Backends: Redis lists
(production) and an in-process deque (development and tests).
"""
