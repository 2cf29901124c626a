"""
Deployment module for Stackyard Kubernetes stacks

Handles updating stacks from uploaded manifests or git repositories,
with rollback-safe on-disk persistence and scheduled git auto-updates.

Components:
    - types: Stack, GitConfig, AutoUpdateSettings and the StackSource variant
    - stack_storage: Durable stack files with backup/rollback
    - kube_client / kube_deployer: Applying manifests to a cluster endpoint
    - registry_secrets: Best-effort ECR image-pull secret refresh
    - autoupdate: Scheduled git refresh jobs
    - stack_updater: Git and file update flows
    - stack_routes: API endpoint for stack updates
"""
