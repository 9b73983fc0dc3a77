"""Real-time notification and messaging delivery for the Shutterbox photo site."""
