"""Task ledger, mailboxes, team runtime and job lifecycle."""
