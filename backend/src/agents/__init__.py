"""
Agent job orchestration.

Modules are imported directly (e.g. src.agents.job_manager); the models
package imports src.agents.constants, so nothing is re-exported here.
"""
