"""kishida_jsi — job submission interface for the lab's Slurm cluster.

Builds Slurm submission scripts from a worker's ``prefs.txt`` and
``dirs.txt``, submits them, and afterwards moves every file the job wrote
into its target data directories back into the job folder under
``scratch/<project>/<worker>/<job>``. Because analysis scripts write their
output next to the data they run over, the files a job produced are found by
diffing a directory snapshot taken before submission against one taken
after the job has finished.

Typical usage::

    from kishida_jsi.config import JSIConfig
    from kishida_jsi.jobs import JobRequest
    from kishida_jsi.prepare import prepare_job, prompt_confirm
    from kishida_jsi.submit import submit_job
    from kishida_jsi.reconcile import reconcile_job

    cfg  = JSIConfig(root=Path("/irb"))
    spec = prepare_job(JobRequest("alice", "study1", "run_01", "fit.R", "R"),
                       cfg, confirm=prompt_confirm)
    submit_job(cfg, "alice", "study1", "run_01", "fit.R")
    # ... once the job has finished
    result = reconcile_job(cfg, "alice", "study1", "run_01")
"""

__version__ = "1.0.0"
