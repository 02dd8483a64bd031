"""
Background jobs module.

- script_analysis_worker: runs pending script analysis jobs
- agent_job_maintenance: stale-job reclamation and retention cleanup
"""
