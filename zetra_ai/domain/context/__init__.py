# This module assembles what the model sees for one user turn
#
# +---------------------+
# |      Memory         |   (Short-lived, per organization, 6h TTL)
# |---------------------|
# | topic / objective   |
# | lastPlan            |
# | strategyLevel, lang |
# +---------------------+
#
#    \    /
#     \  /
#      \/
# +------------------------------+
# |        Packed message        |   (Rebuilt on every send)
# |------------------------------|
# | System rules + output format |
# | Memory (only if present)     |
# | Org/store context            |
# | Last 12 history turns        |
# | USER MESSAGE                 |
# +------------------------------+
#         |
#         v
#   [worker / model]
