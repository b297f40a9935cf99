"""LiveTrack : suivi temps reel et repartition des livraisons / real-time delivery tracking and dispatch."""
