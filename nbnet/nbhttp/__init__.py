"""HTTP helpers: error classes, a pooled body reader, connection keys and proxy dialers."""