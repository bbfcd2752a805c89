"""Backend for filezippr: bundle uploaded files into a downloadable ZIP.

This package keeps FastAPI route handlers thin:
- ZIP assembly from uploaded items
- archive storage (in-memory or one file per archive on disk)
- age-based retention sweeps
- the submit/retrieve pipeline tying them together

Security note:
Archive ids are derived from the upload time and double as download tokens.
They are guessable by design; anyone who knows an id can fetch that archive
until it expires. Every id from a request is validated before it reaches a
store, so tokens can never be used to address other files.
"""
