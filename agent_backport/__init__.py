"""
agent_backport: automated pull request backports.

A comment on a pull request starts a backport job. A durable workflow
(replayable steps, retried transient failures, fatal aborts) drives the job
through the source-control calls and reports the outcome back on the pull
request. Job records and their logs are queryable through the jobs API.
"""
