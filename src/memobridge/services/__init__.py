"""Import pipeline and resource services for memobridge."""
