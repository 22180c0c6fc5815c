"""devpool - concurrent ephemeral devcontainer instances, one per repo/branch."""
