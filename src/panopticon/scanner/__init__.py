"""Scan execution: templates, nmap invocation, snapshot parsing."""
