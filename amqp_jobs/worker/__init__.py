"""
Worker module.
Pops jobs, runs their handlers and applies the retry policy.
"""
