"""
Dialectic Core — Job Scheduler

Hierarchical PLAN / EXECUTE / RENDER jobs over a shared job table:

    from scheduler.runtime import DialecticRuntime
    from scheduler.worker import JobWorker

    rt = DialecticRuntime.from_config()
    JobWorker(rt).run_until_idle()
"""
