# Two ways a reply reaches the screen:
#
# stream_decoder: real increments from the worker's event stream
# pacing: a complete text revealed at a typing pace (fallback and one-shot replies)
#
# Both report the accumulated prefix, never a diff.
