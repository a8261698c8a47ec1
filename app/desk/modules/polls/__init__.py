"""
Polls: staff publish questions with fixed options, students vote once per
poll inside its active window and see the tallies afterwards.
"""
