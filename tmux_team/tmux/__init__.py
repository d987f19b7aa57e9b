"""tmux control: pane topology, worker launch, state detection and messaging."""
