"""Platform primitives for jobspine: errors, logging, settings and storage plumbing."""
