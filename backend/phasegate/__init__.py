"""Phase gate service: rule-driven start barrier for construction project phases."""
