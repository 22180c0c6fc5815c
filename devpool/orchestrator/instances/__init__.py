"""Instance lifecycle: clone, allocate, start, exec, tear down.

- **vcs**: Workspace checkout per (repo, branch)
- **container**: Devcontainer runtime
- **sessions**: Terminal sessions for agents working inside an instance
- **launcher**: ``up`` / ``down`` tying ports, jobs and the collaborators together
"""
