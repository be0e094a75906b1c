# token               (peer -> successor)      pass ring access
# check               (peer -> successor)      liveness probe
# ok                  (peer -> prober)         liveness affirmative
#
# [{"operation": "add"|"sub"|"mul"|"div", "arg1": int32, "arg2": int32}, ...]
#                     (peer -> server)         batched work submission
#
# ["5", "3.5", "Division by zero", "Invalid operation", ...]
#                     (server -> peer)         results, same order as the batch
