"""
Dialectic Core — Engine Primitives

Database backends, configuration, structured logging, the error
taxonomy, prompt resolution, context compression, response guards,
the model adapter and blob storage. Nothing in here knows about jobs;
the scheduler package builds on these.
"""
